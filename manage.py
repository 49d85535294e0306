"""
Shop onboarding and maintenance commands.

Usage:
  python manage.py init-db
  python manage.py add-shop "Sole Bicycles" --phone "(555) 999-2453"
  python manage.py add-bike sole-bicycles --brand "Solé Bicycle Co." --model "e(24)"
  python manage.py add-admin sole-bicycles owner@example.com --name "Owner" --role owner --password ...
  python manage.py list-shops
  python manage.py seed-demo
"""

import argparse
import getpass
import re
import sys

from admin import hash_password
from config import load_config
from persistence import ADMIN_ROLES, build_persistence_gateway, utc_now_iso

DEMO_SHOPS = [
    {
        'shop': {
            'slug': 'sd-electric-bike',
            'name': 'SD Electric Bike',
            'business_name': 'SD Electric Bike',
            'description': (
                'Premium electric bike sales and test rides in Solana Beach. Experience the latest '
                'e-bikes with our convenient digital test ride system.'
            ),
            'email': 'sdebike@gmail.com',
            'phone': '(858) 345-1030',
            'address': '101 S. Hwy 101, Solana Beach, CA 92075',
            'primary_color': '#3B82F6',
            'secondary_color': '#1E40AF',
            'timezone': 'America/Los_Angeles',
        },
        'bikes': [
            ('Aventon', 'Pace 500.3 Step-Through', 'Class 3 commuter e-bike with a low step-through frame.'),
            ('Rad Power Bikes', 'RadRover 6 Plus', 'Fat-tire all-terrain e-bike with hydraulic brakes.'),
            ('Zooz', 'Ultra Urban', 'BMX-style urban e-bike built for quick city riding.'),
            ('Benno', 'eScout 10D', 'Compact utility e-bike with cargo capacity for everyday errands.'),
            ('Aventon', 'Ramblas eMTB', 'Full-power electric mountain bike for trail riding.'),
        ],
    },
    {
        'shop': {
            'slug': 'sole-bicycles',
            'name': 'Sole Bicycles',
            'business_name': 'Sole Bicycles LLC',
            'description': (
                'Premium bicycle sales and test rides featuring Solé Bicycle Co. electric bikes, single '
                'speeds, cruisers, and step-through models. Located in Los Angeles.'
            ),
            'email': 'info@solebicycles.com',
            'phone': '(555) 999-2453',
            'address': 'Los Angeles, CA',
            'primary_color': '#7DD3C0',
            'secondary_color': '#5FB3A1',
            'timezone': 'America/Los_Angeles',
        },
        'bikes': [
            ('Solé Bicycle Co.', 'e-Commuter', 'Electric commuter bike for daily commuting with electric assist.'),
            ('Solé Bicycle Co.', 'e(24)', 'Premium electric bike with a high-quality electric riding experience.'),
            ('Solé Bicycle Co.', 'The Single Speed / Fixed Gear', 'Classic single speed bike for city riding.'),
            ('Solé Bicycle Co.', 'The Coastal Cruiser', 'Classic beach cruiser for leisurely coastal rides.'),
        ],
    },
]


class CommandError(Exception):
    pass


def generate_slug(name):
    slug = re.sub(r'[^a-z0-9\s-]', '', (name or '').lower())
    slug = re.sub(r'\s+', '-', slug.strip())
    return re.sub(r'-+', '-', slug).strip('-')


def _value(result):
    if not result.ok:
        raise CommandError(f'{result.kind}: {result.message}')
    return result.value


def _find_shop(persistence, slug):
    rows = _value(persistence.query('shops', {'slug': slug}, limit=1))
    if not rows:
        raise CommandError(f'Shop not found: {slug}')
    return rows[0]


def create_shop(persistence, name, slug=None, **fields):
    slug = slug or generate_slug(name)
    if not slug:
        raise CommandError('Shop slug is empty; pass --slug')
    if _value(persistence.query('shops', {'slug': slug}, limit=1)):
        raise CommandError(f'Shop slug already exists: {slug}')

    values = {key: value for key, value in fields.items() if value is not None}
    values.update(slug=slug, name=name, is_active=True, onboarded_at=utc_now_iso())
    return _value(persistence.insert_or_update('shops', values))


def add_bike(persistence, slug, brand, model, description='', available=True):
    shop = _find_shop(persistence, slug)
    return _value(persistence.insert_or_update(
        'bike_inventory',
        {'shop_id': shop['id'], 'brand': brand, 'model': model, 'description': description, 'is_available': available},
        match={'shop_id': shop['id'], 'brand': brand, 'model': model},
    ))


def add_admin(persistence, slug, email, full_name, role, password):
    if role not in ADMIN_ROLES:
        raise CommandError(f"Role must be one of: {', '.join(ADMIN_ROLES)}")
    if len(password or '') < 8:
        raise CommandError('Password must be at least 8 characters')
    shop = _find_shop(persistence, slug)
    email = email.strip().lower()
    return _value(persistence.insert_or_update(
        'shop_admins',
        {
            'shop_id': shop['id'],
            'email': email,
            'full_name': full_name,
            'role': role,
            'password_hash': hash_password(password),
            'is_active': True,
        },
        match={'email': email},
    ))


def seed_demo(persistence):
    created = []
    for demo in DEMO_SHOPS:
        slug = demo['shop']['slug']
        if _value(persistence.query('shops', {'slug': slug}, limit=1)):
            print(f'Shop already exists: {slug}')
        else:
            fields = {key: value for key, value in demo['shop'].items() if key not in {'slug', 'name'}}
            create_shop(persistence, demo['shop']['name'], slug=slug, **fields)
            created.append(slug)
            print(f'Created shop: {slug}')
        for brand, model, description in demo['bikes']:
            add_bike(persistence, slug, brand, model, description)
    return created


# ---------------------- COMMANDS ----------------------

def cmd_init_db(args, persistence):
    if not hasattr(persistence, 'init_schema'):
        raise CommandError('This backend is provisioned with schema.sql; nothing to do here.')
    persistence.init_schema()
    print('Database initialized.')


def cmd_add_shop(args, persistence):
    shop = create_shop(
        persistence,
        args.name,
        slug=args.slug,
        business_name=args.business_name,
        email=args.email,
        phone=args.phone,
        address=args.address,
        timezone=args.timezone,
        default_test_duration_minutes=args.duration,
        authorization_amount_cents=args.hold_cents,
    )
    print(f"Created shop {shop['slug']} ({shop['id']})")
    print(f"  Customer URL: /shop/{shop['slug']}")
    print(f"  Admin URL:    /admin/{shop['slug']}")


def cmd_add_bike(args, persistence):
    bike = add_bike(persistence, args.slug, args.brand, args.model, args.description or '', not args.unavailable)
    print(f"Saved bike {bike['brand']} {bike['model']} ({bike['id']})")


def cmd_add_admin(args, persistence):
    password = args.password or getpass.getpass('Password: ')
    admin = add_admin(persistence, args.slug, args.email, args.name, args.role, password)
    print(f"Saved admin {admin['email']} ({admin['role']})")


def cmd_list_shops(args, persistence):
    shops = _value(persistence.query('shops', order_by='slug'))
    if not shops:
        print('No shops.')
    for shop in shops:
        state = 'active' if shop.get('is_active') else 'inactive'
        print(f"{shop['slug']:<24} {shop.get('business_name') or shop['name']:<32} {state}")


def cmd_seed_demo(args, persistence):
    seed_demo(persistence)
    print('Demo shops seeded.')


def build_parser():
    parser = argparse.ArgumentParser(description='Digital test ride maintenance commands')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Create or migrate the SQLite schema').set_defaults(func=cmd_init_db)

    shop = subparsers.add_parser('add-shop', help='Onboard a new shop tenant')
    shop.add_argument('name')
    shop.add_argument('--slug')
    shop.add_argument('--business-name')
    shop.add_argument('--email')
    shop.add_argument('--phone')
    shop.add_argument('--address')
    shop.add_argument('--timezone')
    shop.add_argument('--duration', type=int, default=30, help='Test ride length in minutes')
    shop.add_argument('--hold-cents', type=int, default=100, help='Card authorization amount in cents')
    shop.set_defaults(func=cmd_add_shop)

    bike = subparsers.add_parser('add-bike', help='Add or update a bike in a shop inventory')
    bike.add_argument('slug')
    bike.add_argument('--brand', required=True)
    bike.add_argument('--model', required=True)
    bike.add_argument('--description')
    bike.add_argument('--unavailable', action='store_true')
    bike.set_defaults(func=cmd_add_bike)

    admin = subparsers.add_parser('add-admin', help='Create or reset a shop admin login')
    admin.add_argument('slug')
    admin.add_argument('email')
    admin.add_argument('--name', required=True)
    admin.add_argument('--role', default='owner', choices=ADMIN_ROLES)
    admin.add_argument('--password')
    admin.set_defaults(func=cmd_add_admin)

    subparsers.add_parser('list-shops', help='List shop tenants').set_defaults(func=cmd_list_shops)
    subparsers.add_parser('seed-demo', help='Create the demo shops and inventory').set_defaults(func=cmd_seed_demo)
    return parser


def main(argv=None, persistence=None):
    args = build_parser().parse_args(argv)
    if persistence is None:
        persistence = build_persistence_gateway(load_config())
        if hasattr(persistence, 'init_schema'):
            persistence.init_schema()
    try:
        args.func(args, persistence)
    except CommandError as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
