import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jinja2 import Environment

SIGNATURE_PATTERN = re.compile(r'^data:image/(png|jpeg|webp);base64,[A-Za-z0-9+/=\s]+$')

WAIVER_TERMS = (
    'I, the undersigned, acknowledge that riding an electric bicycle involves inherent risks, including the '
    'risk of serious injury. I am competent to operate a bicycle, will obey all traffic laws, and will use '
    'appropriate safety equipment at all times. I accept full responsibility for my actions during this '
    'test ride and agree to return the bicycle by the agreed time in the same condition received.',
    'I hereby release and hold harmless {business_name}, its owners, employees, and affiliates from any '
    'and all claims, liabilities, damages, or expenses arising from or related to my participation in the '
    'test ride. I agree to pay for any damage or loss sustained to the bicycle due to my misuse or negligence.',
    'By signing below, I confirm that I have read, understand, and agree to the terms above.',
)

WAIVER_TEMPLATE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{{ business_name }} Test Ride Waiver</title>
    <style>
      body { font-family: -apple-system, BlinkMacSystemFont, Segoe UI, Roboto, Helvetica, Arial, sans-serif; line-height: 1.5; color: #0f172a; padding: 24px; }
      h1 { font-size: 20px; margin: 0 0 8px; }
      h2 { font-size: 16px; margin: 16px 0 8px; }
      .meta { color: #475569; font-size: 14px; margin-bottom: 16px; }
      .box { background: #f8fafc; border: 1px solid #e2e8f0; border-radius: 8px; padding: 12px; }
      .sig img { display: block; height: 80px; border: 1px solid #e2e8f0; background: white; padding: 4px; }
      .sigline { margin-top: 8px; border-top: 1px solid #cbd5e1; padding-top: 4px; font-size: 14px; }
    </style>
  </head>
  <body>
    <h1>{{ business_name }} Test Ride Waiver &amp; Release</h1>
    <div class="meta">Signed by {{ customer_name }} (Phone: {{ customer_phone }}) on {{ signed_at }}</div>
    <div class="box">
      {% for paragraph in terms %}<p>{{ paragraph }}</p>
      {% endfor %}
    </div>
    <div class="sig">
      <h2>Signature</h2>
      {% if signature_image %}<img src="{{ signature_image }}" alt="Signature" />
      {% else %}<p>[signature not captured]</p>
      {% endif %}
      <div class="sigline">{{ customer_name }}, {{ signed_at }}</div>
    </div>
  </body>
</html>
"""

_environment = Environment(autoescape=True)
_template = _environment.from_string(WAIVER_TEMPLATE)


def is_valid_signature(signature_image):
    return bool(signature_image) and bool(SIGNATURE_PATTERN.match(signature_image))


def waiver_terms(business_name):
    return [paragraph.format(business_name=business_name) for paragraph in WAIVER_TERMS]


def format_signed_at(signed_at, timezone_name=None):
    if isinstance(signed_at, str):
        signed_at = datetime.fromisoformat(signed_at)
    if timezone_name and signed_at.tzinfo is not None:
        try:
            signed_at = signed_at.astimezone(ZoneInfo(timezone_name))
        except ZoneInfoNotFoundError:
            pass
    return signed_at.strftime('%B %d, %Y %I:%M %p %Z').strip()


def render_waiver(business_name, customer_name, customer_phone, signed_at, signature_image, timezone_name=None):
    """Render the signed liability waiver as a standalone HTML document.

    Every customer-supplied value goes through autoescaping. A signature that
    is not an inline png/jpeg/webp data URL is left out of the document.
    """
    return _template.render(
        business_name=business_name,
        customer_name=customer_name,
        customer_phone=customer_phone,
        signed_at=format_signed_at(signed_at, timezone_name),
        signature_image=signature_image if is_valid_signature(signature_image) else '',
        terms=waiver_terms(business_name),
    )
