import json
import logging
import os
import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import create_client

from errors import ConfigurationError, Err, GatewayError, Ok

logger = logging.getLogger(__name__)

DEFAULT_RIDE_MINUTES = 30
DEFAULT_HOLD_CENTS = 100
DEFAULT_PRIMARY_COLOR = '#3B82F6'
DEFAULT_SECONDARY_COLOR = '#1E40AF'

RIDE_STATUSES = ('active', 'completed', 'cancelled')
PAYMENT_STATUSES = ('pending', 'authorized', 'captured', 'failed', 'cancelled')
DELIVERY_STATUSES = ('pending', 'sent', 'failed')
MESSAGE_TYPES = ('confirmation', 'reminder', 'completion', 'overdue')
ADMIN_ROLES = ('owner', 'admin', 'staff')

FRACTION_PATTERN = re.compile(r'\.(\d+)(?=[+-]\d{2}:?\d{2}$|$)')

TABLES = {
    'shops': [
        ('id', 'TEXT PRIMARY KEY'),
        ('slug', 'TEXT UNIQUE NOT NULL'),
        ('name', 'TEXT NOT NULL'),
        ('business_name', 'TEXT'),
        ('description', 'TEXT'),
        ('email', 'TEXT'),
        ('phone', 'TEXT'),
        ('address', 'TEXT'),
        ('website_url', 'TEXT'),
        ('logo_url', 'TEXT'),
        ('primary_color', f"TEXT DEFAULT '{DEFAULT_PRIMARY_COLOR}'"),
        ('secondary_color', f"TEXT DEFAULT '{DEFAULT_SECONDARY_COLOR}'"),
        ('default_test_duration_minutes', f'INTEGER DEFAULT {DEFAULT_RIDE_MINUTES}'),
        ('authorization_amount_cents', f'INTEGER DEFAULT {DEFAULT_HOLD_CENTS}'),
        ('require_id_photo', 'INTEGER DEFAULT 1'),
        ('require_waiver', 'INTEGER DEFAULT 1'),
        ('timezone', 'TEXT'),
        ('subscription_tier', "TEXT DEFAULT 'basic'"),
        ('subscription_status', "TEXT DEFAULT 'active'"),
        ('is_active', 'INTEGER DEFAULT 1'),
        ('onboarded_at', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'customers': [
        ('id', 'TEXT PRIMARY KEY'),
        ('shop_id', 'TEXT REFERENCES shops(id)'),
        ('name', 'TEXT NOT NULL'),
        ('phone', 'TEXT NOT NULL'),
        ('email', 'TEXT'),
        ('id_photo_url', 'TEXT'),
        ('signature_data', 'TEXT'),
        ('waiver_url', 'TEXT'),
        ('waiver_signed', 'INTEGER DEFAULT 0'),
        ('submitted_at', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'test_drives': [
        ('id', 'TEXT PRIMARY KEY'),
        ('shop_id', 'TEXT REFERENCES shops(id)'),
        ('customer_id', 'TEXT NOT NULL REFERENCES customers(id)'),
        ('bike_model', 'TEXT NOT NULL'),
        ('start_time', 'TEXT'),
        ('end_time', 'TEXT'),
        ('duration_minutes', 'INTEGER'),
        ('status', "TEXT NOT NULL DEFAULT 'active'"),
        ('notes', 'TEXT'),
        ('stripe_payment_intent_id', 'TEXT'),
        ('authorization_amount_cents', 'INTEGER'),
        ('payment_status', "TEXT DEFAULT 'pending'"),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'bike_inventory': [
        ('id', 'TEXT PRIMARY KEY'),
        ('shop_id', 'TEXT NOT NULL REFERENCES shops(id)'),
        ('model', 'TEXT NOT NULL'),
        ('brand', 'TEXT NOT NULL'),
        ('description', 'TEXT'),
        ('image_url', 'TEXT'),
        ('is_available', 'INTEGER DEFAULT 1'),
        ('maintenance_notes', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'notifications': [
        ('id', 'TEXT PRIMARY KEY'),
        ('shop_id', 'TEXT REFERENCES shops(id)'),
        ('customer_id', 'TEXT REFERENCES customers(id)'),
        ('test_drive_id', 'TEXT REFERENCES test_drives(id)'),
        ('customer_phone', 'TEXT NOT NULL'),
        ('message_content', 'TEXT NOT NULL'),
        ('message_type', 'TEXT NOT NULL'),
        ('delivery_status', "TEXT NOT NULL DEFAULT 'pending'"),
        ('provider', 'TEXT'),
        ('provider_message_id', 'TEXT'),
        ('error', 'TEXT'),
        ('sent_at', 'TEXT'),
        ('created_at', 'TEXT'),
    ],
    'shop_admins': [
        ('id', 'TEXT PRIMARY KEY'),
        ('shop_id', 'TEXT NOT NULL REFERENCES shops(id)'),
        ('email', 'TEXT UNIQUE NOT NULL'),
        ('full_name', 'TEXT NOT NULL'),
        ('role', "TEXT NOT NULL DEFAULT 'staff'"),
        ('password_hash', 'TEXT NOT NULL'),
        ('is_active', 'INTEGER DEFAULT 1'),
        ('last_login_at', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
}

BOOLEAN_COLUMNS = {'require_id_photo', 'require_waiver', 'is_active', 'waiver_signed', 'is_available'}
JSON_COLUMNS = {'address'}

INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_customers_shop_id ON customers(shop_id)',
    'CREATE INDEX IF NOT EXISTS idx_test_drives_shop_status ON test_drives(shop_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_test_drives_payment_intent ON test_drives(stripe_payment_intent_id)',
    'CREATE INDEX IF NOT EXISTS idx_bike_inventory_shop_id ON bike_inventory(shop_id)',
    'CREATE INDEX IF NOT EXISTS idx_notifications_test_drive_id ON notifications(test_drive_id)',
]


def new_id():
    return uuid.uuid4().hex


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value):
    """Parse a stored ISO timestamp, including Postgres timestamptz text.

    Postgres drops trailing zeros from the fraction (``.12345``) and may end with
    ``Z``; both are normalized before ``fromisoformat``. Naive values are UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = value.strip().replace(' ', 'T', 1)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    text = FRACTION_PATTERN.sub(lambda match: '.' + match.group(1)[:6].ljust(6, '0'), text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_columns(table, names):
    if table not in TABLES:
        raise ValueError(f'Unknown table: {table}')
    known = {name for name, _ in TABLES[table]}
    unknown = [name for name in names if name not in known]
    if unknown:
        raise ValueError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")


def _split_order(order_by):
    if not order_by:
        return None, False
    if order_by.startswith('-'):
        return order_by[1:], True
    return order_by, False


@dataclass(frozen=True)
class Shop:
    id: str
    slug: str
    name: str
    business_name: str = ''
    description: str = ''
    email: str = ''
    phone: str = ''
    address: str = ''
    logo_url: str = ''
    primary_color: str = DEFAULT_PRIMARY_COLOR
    secondary_color: str = DEFAULT_SECONDARY_COLOR
    ride_minutes: int = DEFAULT_RIDE_MINUTES
    hold_amount_cents: int = DEFAULT_HOLD_CENTS
    require_id_photo: bool = True
    require_waiver: bool = True
    timezone: str = ''
    is_active: bool = True

    @property
    def display_name(self):
        return self.business_name or self.name

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row['id'],
            slug=row['slug'],
            name=row['name'],
            business_name=row.get('business_name') or '',
            description=row.get('description') or '',
            email=row.get('email') or '',
            phone=row.get('phone') or '',
            address=format_address(row.get('address')),
            logo_url=row.get('logo_url') or '',
            primary_color=row.get('primary_color') or DEFAULT_PRIMARY_COLOR,
            secondary_color=row.get('secondary_color') or DEFAULT_SECONDARY_COLOR,
            ride_minutes=int(row.get('default_test_duration_minutes') or DEFAULT_RIDE_MINUTES),
            hold_amount_cents=int(row.get('authorization_amount_cents') or DEFAULT_HOLD_CENTS),
            require_id_photo=row.get('require_id_photo', True) is not False,
            require_waiver=row.get('require_waiver', True) is not False,
            timezone=row.get('timezone') or '',
            is_active=bool(row.get('is_active', True)),
        )

    def public_payload(self):
        return {
            'id': self.id,
            'slug': self.slug,
            'name': self.name,
            'business_name': self.display_name,
            'description': self.description,
            'phone': self.phone,
            'email': self.email,
            'address': self.address,
            'logo_url': self.logo_url,
            'primary_color': self.primary_color,
            'secondary_color': self.secondary_color,
            'default_test_duration_minutes': self.ride_minutes,
            'authorization_amount_cents': self.hold_amount_cents,
        }


def format_address(value):
    """Flatten a stored address (plain text or a JSON object) into one line."""
    if not value:
        return ''
    if isinstance(value, dict):
        city_line = ' '.join(
            part for part in (value.get('state'), value.get('zip') or value.get('postal_code')) if part
        )
        parts = [value.get('street') or value.get('line1'), value.get('line2'), value.get('city'), city_line]
        return ', '.join(part for part in parts if part)
    return str(value)


def load_shop(persistence, slug, include_inactive=False):
    match = {'slug': slug}
    if not include_inactive:
        match['is_active'] = True
    result = persistence.query('shops', match, limit=1)
    if not result.ok:
        raise GatewayError.from_err('persistence', result)
    if not result.value:
        return None
    return Shop.from_row(result.value[0])


class SqliteGateway:
    """Persistence backed by a local SQLite file and an on-disk bucket tree."""

    backend_name = 'sqlite'

    def __init__(self, database_path, upload_dir, public_base_url='/files'):
        self.database_path = database_path
        self.upload_dir = upload_dir
        self.public_base_url = public_base_url.rstrip('/')

    def get_connection(self):
        conn = sqlite3.connect(self.database_path)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def init_schema(self):
        conn = self.get_connection()
        cursor = conn.cursor()
        for table, columns in TABLES.items():
            ddl = ',\n    '.join(f'{name} {spec}' for name, spec in columns)
            cursor.execute(f'CREATE TABLE IF NOT EXISTS {table} (\n    {ddl}\n)')

            cursor.execute(f'PRAGMA table_info({table})')
            existing_columns = {row['name'] for row in cursor.fetchall()}
            for name, spec in columns:
                if name not in existing_columns:
                    column_spec = spec.replace('PRIMARY KEY', '').replace('UNIQUE', '').replace('NOT NULL', '')
                    cursor.execute(f'ALTER TABLE {table} ADD COLUMN {name} {column_spec}')

        for statement in INDEXES:
            cursor.execute(statement)
        conn.commit()
        conn.close()
        os.makedirs(self.upload_dir, exist_ok=True)

    def _encode(self, value):
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _decode(self, row):
        record = dict(row)
        for name in BOOLEAN_COLUMNS & record.keys():
            if record[name] is not None:
                record[name] = bool(record[name])
        for name in JSON_COLUMNS & record.keys():
            value = record[name]
            if isinstance(value, str) and value.startswith('{'):
                try:
                    record[name] = json.loads(value)
                except ValueError:
                    pass
        return record

    def _where(self, match):
        clauses = []
        params = []
        for name, value in match.items():
            if isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    clauses.append('0')
                    continue
                clauses.append(f"{name} IN ({', '.join('?' for _ in values)})")
                params.extend(self._encode(item) for item in values)
            elif value is None:
                clauses.append(f'{name} IS NULL')
            else:
                clauses.append(f'{name} = ?')
                params.append(self._encode(value))
        return ' AND '.join(clauses) or '1', params

    def _stamp(self, table, values, creating):
        columns = {name for name, _ in TABLES[table]}
        now = utc_now_iso()
        if creating:
            values.setdefault('id', new_id())
            if 'created_at' in columns:
                values.setdefault('created_at', now)
        if 'updated_at' in columns:
            values['updated_at'] = now
        return values

    def insert_or_update(self, table, fields, match=None):
        try:
            _check_columns(table, list(fields) + list(match or {}))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        conn = self.get_connection()
        cursor = conn.cursor()
        try:
            cursor.execute('BEGIN IMMEDIATE')
            existing = None
            if match:
                where, params = self._where(match)
                cursor.execute(f'SELECT id FROM {table} WHERE {where} LIMIT 1', params)
                existing = cursor.fetchone()

            if existing:
                values = self._stamp(table, dict(fields), creating=False)
                values.pop('id', None)
                assignments = ', '.join(f'{name} = ?' for name in values)
                cursor.execute(
                    f'UPDATE {table} SET {assignments} WHERE id = ?',
                    [self._encode(value) for value in values.values()] + [existing['id']],
                )
                row_id = existing['id']
            else:
                values = self._stamp(table, dict(fields), creating=True)
                cursor.execute(
                    f"INSERT INTO {table} ({', '.join(values)}) VALUES ({', '.join('?' for _ in values)})",
                    [self._encode(value) for value in values.values()],
                )
                row_id = values['id']

            cursor.execute(f'SELECT * FROM {table} WHERE id = ?', (row_id,))
            record = self._decode(cursor.fetchone())
            conn.commit()
            return Ok(record)
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            return Err('conflict', str(exc))
        except sqlite3.Error as exc:
            conn.rollback()
            return Err('persistence_error', str(exc))
        finally:
            conn.close()

    def update(self, table, match, fields):
        try:
            _check_columns(table, list(fields) + list(match))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        conn = self.get_connection()
        cursor = conn.cursor()
        try:
            where, params = self._where(match)
            cursor.execute(f'SELECT id FROM {table} WHERE {where}', params)
            ids = [row['id'] for row in cursor.fetchall()]
            if not ids:
                return Ok([])

            values = self._stamp(table, dict(fields), creating=False)
            assignments = ', '.join(f'{name} = ?' for name in values)
            placeholders = ', '.join('?' for _ in ids)
            cursor.execute(
                f'UPDATE {table} SET {assignments} WHERE id IN ({placeholders})',
                [self._encode(value) for value in values.values()] + ids,
            )
            cursor.execute(f'SELECT * FROM {table} WHERE id IN ({placeholders})', ids)
            records = [self._decode(row) for row in cursor.fetchall()]
            conn.commit()
            return Ok(records)
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            return Err('conflict', str(exc))
        except sqlite3.Error as exc:
            conn.rollback()
            return Err('persistence_error', str(exc))
        finally:
            conn.close()

    def query(self, table, match=None, order_by=None, limit=None):
        column, descending = _split_order(order_by)
        try:
            _check_columns(table, list(match or {}) + ([column] if column else []))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        where, params = self._where(match or {})
        sql = f'SELECT * FROM {table} WHERE {where}'
        if column:
            sql += f" ORDER BY {column} {'DESC' if descending else 'ASC'}"
        if limit:
            sql += ' LIMIT ?'
            params.append(int(limit))

        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            return Ok([self._decode(row) for row in cursor.fetchall()])
        except sqlite3.Error as exc:
            return Err('persistence_error', str(exc))
        finally:
            conn.close()

    def resolve_file(self, bucket, path):
        bucket_root = os.path.realpath(os.path.join(self.upload_dir, bucket))
        target = os.path.realpath(os.path.join(bucket_root, path))
        if os.path.commonpath([bucket_root, target]) != bucket_root:
            raise ValueError('Path escapes the bucket directory')
        return bucket_root, os.path.relpath(target, bucket_root)

    def upload_file(self, bucket, path, data, content_type):
        try:
            bucket_root, relative_path = self.resolve_file(bucket, path)
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        target = os.path.join(bucket_root, relative_path)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, 'wb') as handle:
                handle.write(data)
        except OSError as exc:
            return Err('storage_error', str(exc))

        logger.info('file_stored bucket=%s path=%s bytes=%s content_type=%s', bucket, relative_path, len(data), content_type)
        return Ok(f"{self.public_base_url}/{bucket}/{relative_path.replace(os.sep, '/')}")


class SupabaseGateway:
    """Persistence backed by Supabase tables and Storage buckets."""

    backend_name = 'supabase'

    def __init__(self, url='', service_key='', client=None):
        if client is None:
            if not url or not service_key:
                raise ConfigurationError(
                    'persistence',
                    'Supabase not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.',
                )
            client = create_client(url, service_key)
        self.client = client

    def _filtered(self, builder, match):
        for name, value in (match or {}).items():
            if isinstance(value, (list, tuple, set)):
                builder = builder.in_(name, list(value))
            elif value is None:
                builder = builder.is_(name, 'null')
            else:
                builder = builder.eq(name, value)
        return builder

    def _prepare(self, fields):
        return {
            name: value.isoformat() if isinstance(value, datetime) else value
            for name, value in fields.items()
        }

    def insert_or_update(self, table, fields, match=None):
        try:
            _check_columns(table, list(fields) + list(match or {}))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        values = self._prepare(fields)
        try:
            if match:
                existing = self._filtered(self.client.table(table).select('id'), match).limit(1).execute().data
                if existing:
                    values['updated_at'] = utc_now_iso()
                    rows = (
                        self.client.table(table)
                        .update(values)
                        .eq('id', existing[0]['id'])
                        .execute()
                        .data
                    )
                    return Ok(rows[0] if rows else {**existing[0], **values})

            values.setdefault('id', str(uuid.uuid4()))
            rows = self.client.table(table).insert(values).execute().data
            return Ok(rows[0] if rows else values)
        except Exception as exc:
            logger.warning('supabase_write_failed table=%s error=%s', table, exc)
            return Err('persistence_error', str(exc))

    def update(self, table, match, fields):
        try:
            _check_columns(table, list(fields) + list(match))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        values = self._prepare(fields)
        if any(name == 'updated_at' for name, _ in TABLES[table]):
            values['updated_at'] = utc_now_iso()
        try:
            rows = self._filtered(self.client.table(table).update(values), match).execute().data
            return Ok(rows or [])
        except Exception as exc:
            logger.warning('supabase_update_failed table=%s error=%s', table, exc)
            return Err('persistence_error', str(exc))

    def query(self, table, match=None, order_by=None, limit=None):
        column, descending = _split_order(order_by)
        try:
            _check_columns(table, list(match or {}) + ([column] if column else []))
        except ValueError as exc:
            return Err('invalid_request', str(exc))

        try:
            builder = self._filtered(self.client.table(table).select('*'), match)
            if column:
                builder = builder.order(column, desc=descending)
            if limit:
                builder = builder.limit(int(limit))
            return Ok(builder.execute().data or [])
        except Exception as exc:
            logger.warning('supabase_query_failed table=%s error=%s', table, exc)
            return Err('persistence_error', str(exc))

    def upload_file(self, bucket, path, data, content_type):
        try:
            storage = self.client.storage.from_(bucket)
            storage.upload(path, data, {'content-type': content_type, 'upsert': 'true'})
            public_url = storage.get_public_url(path)
        except Exception as exc:
            logger.warning('supabase_upload_failed bucket=%s path=%s error=%s', bucket, path, exc)
            return Err('storage_error', str(exc))

        if isinstance(public_url, dict):
            public_url = public_url.get('publicURL') or public_url.get('publicUrl')
        if not public_url:
            return Err('storage_error', 'Storage did not return a public URL')
        return Ok(public_url)


def build_persistence_gateway(config, public_base_url='/files'):
    backend = config.persistence.backend
    if backend == 'sqlite':
        return SqliteGateway(config.persistence.database_path, config.persistence.upload_dir, public_base_url)
    if backend == 'supabase':
        return SupabaseGateway(config.persistence.supabase_url, config.persistence.supabase_service_key)
    raise ConfigurationError('persistence', f'Unknown PERSISTENCE_BACKEND: {backend}')
