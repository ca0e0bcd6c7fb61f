"""initial schema

Revision ID: 4e2a7c9d1b30
Revises:
Create Date: 2026-10-12 09:14:02.518204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4e2a7c9d1b30'
down_revision = None
branch_labels = None
depends_on = None


# (table, column, unique)
INDEXES = [
    ('users', 'email', True),
    ('users', 'phone', True),
    ('users', 'role', False),
    ('users', 'created_at', False),
    ('refresh_tokens', 'user_id', False),
    ('refresh_tokens', 'token_hash', True),
    ('refresh_tokens', 'expires_at', False),
    ('refresh_tokens', 'revoked_at', False),
    ('user_tokens', 'user_id', False),
    ('user_tokens', 'purpose', False),
    ('user_tokens', 'token_hash', True),
    ('sms_verifications', 'user_id', False),
    ('sms_verifications', 'phone', False),
    ('sms_verifications', 'created_at', False),
    ('notification_settings', 'user_id', True),
    ('categories', 'slug', True),
    ('categories', 'parent_id', False),
    ('listings', 'user_id', False),
    ('listings', 'category_id', False),
    ('listings', 'make', False),
    ('listings', 'model', False),
    ('listings', 'year', False),
    ('listings', 'fuel_type', False),
    ('listings', 'transmission', False),
    ('listings', 'body_type', False),
    ('listings', 'location', False),
    ('listings', 'listing_type', False),
    ('listings', 'status', False),
    ('listings', 'expires_at', False),
    ('listings', 'created_at', False),
    ('rental_listings', 'user_id', False),
    ('rental_listings', 'make', False),
    ('rental_listings', 'model', False),
    ('rental_listings', 'category', False),
    ('rental_listings', 'location', False),
    ('rental_listings', 'is_active', False),
    ('rental_listings', 'expires_at', False),
    ('rental_listings', 'created_at', False),
    ('rental_bookings', 'rental_listing_id', False),
    ('rental_bookings', 'user_id', False),
    ('rental_bookings', 'start_date', False),
    ('rental_bookings', 'end_date', False),
    ('rental_bookings', 'status', False),
    ('rental_bookings', 'payment_status', False),
    ('rental_bookings', 'created_at', False),
    ('rental_pricing_rules', 'rental_listing_id', False),
    ('payments', 'payment_intent_id', True),
    ('payments', 'user_id', False),
    ('payments', 'listing_id', False),
    ('payments', 'rental_listing_id', False),
    ('payments', 'provider', False),
    ('payments', 'status', False),
    ('payments', 'listing_type', False),
    ('payments', 'created_at', False),
    ('payment_transitions', 'payment_id', False),
    ('reviews', 'reviewer_id', False),
    ('reviews', 'target_id', False),
    ('reviews', 'listing_id', False),
    ('reviews', 'rental_listing_id', False),
    ('reviews', 'created_at', False),
    ('disputes', 'booking_id', False),
    ('disputes', 'assigned_to', False),
    ('disputes', 'status', False),
    ('disputes', 'priority', False),
    ('disputes', 'created_at', False),
    ('dispute_messages', 'dispute_id', False),
    ('notifications', 'user_id', False),
    ('notifications', 'type', False),
    ('notifications', 'is_read', False),
    ('notifications', 'created_at', False),
    ('subscriptions', 'user_id', True),
    ('subscriptions', 'status', False),
    ('favorites', 'user_id', False),
    ('favorites', 'listing_id', False),
    ('favorites', 'rental_listing_id', False),
    ('rental_companies', 'user_id', True),
    ('rental_companies', 'verification_status', False),
    ('banners', 'position', False),
    ('content_pages', 'slug', True),
    ('admin_action_logs', 'admin_id', False),
    ('admin_action_logs', 'action', False),
    ('admin_action_logs', 'created_at', False),
    ('platform_events', 'created_at', False),
    ('platform_events', 'event_type', False),
    ('platform_events', 'actor_user_id', False),
    ('platform_events', 'subject_type', False),
    ('platform_events', 'subject_id', False),
    ('platform_events', 'idempotency_key', True),
    ('commissions', 'user_id', False),
    ('commissions', 'type', False),
    ('commissions', 'status', False),
    ('commissions', 'created_at', False),
]


def _created_updated():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('image_url', sa.String(length=1024), nullable=True),
        sa.Column('location', sa.String(length=120), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='buyer'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('phone_verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_created_updated(),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'refresh_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('token_hash', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('device_id', sa.String(length=128), nullable=True),
    )
    op.create_table(
        'user_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('purpose', sa.String(length=32), nullable=False),
        sa.Column('token_hash', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'sms_verifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('code_hash', sa.String(length=128), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'notification_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('email_enabled', sa.Boolean(), nullable=False),
        sa.Column('sms_enabled', sa.Boolean(), nullable=False),
        sa.Column('push_enabled', sa.Boolean(), nullable=False),
        sa.Column('booking_updates', sa.Boolean(), nullable=False),
        sa.Column('payment_updates', sa.Boolean(), nullable=False),
        sa.Column('listing_updates', sa.Boolean(), nullable=False),
        sa.Column('marketing', sa.Boolean(), nullable=False),
        *_created_updated(),
    )
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('slug', sa.String(length=140), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('icon', sa.String(length=120), nullable=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('categories.id'), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_created_updated(),
    )
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id'), nullable=True),
        sa.Column('title', sa.String(length=160), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('make', sa.String(length=80), nullable=False),
        sa.Column('model', sa.String(length=80), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('mileage', sa.Integer(), nullable=False),
        sa.Column('fuel_type', sa.String(length=32), nullable=True),
        sa.Column('transmission', sa.String(length=32), nullable=True),
        sa.Column('body_type', sa.String(length=32), nullable=True),
        sa.Column('color', sa.String(length=40), nullable=True),
        sa.Column('condition', sa.String(length=32), nullable=True),
        sa.Column('engine_size', sa.String(length=32), nullable=True),
        sa.Column('location', sa.String(length=120), nullable=True),
        sa.Column('features_json', sa.Text(), nullable=True),
        sa.Column('images_json', sa.Text(), nullable=True),
        sa.Column('listing_type', sa.String(length=24), nullable=False, server_default='free'),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='active'),
        sa.Column('views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('contact_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('premium_expires_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('moderated_at', sa.DateTime(), nullable=True),
        sa.Column('moderated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('is_negotiable', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_created_updated(),
    )
    op.create_table(
        'rental_listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=160), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('make', sa.String(length=80), nullable=False),
        sa.Column('model', sa.String(length=80), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=32), nullable=False, server_default='economy'),
        sa.Column('price_per_day', sa.Float(), nullable=False),
        sa.Column('seats', sa.Integer(), nullable=False),
        sa.Column('transmission', sa.String(length=32), nullable=True),
        sa.Column('fuel_type', sa.String(length=32), nullable=True),
        sa.Column('location', sa.String(length=120), nullable=True),
        sa.Column('features_json', sa.Text(), nullable=True),
        sa.Column('images_json', sa.Text(), nullable=True),
        sa.Column('min_rental_days', sa.Integer(), nullable=False),
        sa.Column('max_rental_days', sa.Integer(), nullable=True),
        sa.Column('available_from', sa.Date(), nullable=True),
        sa.Column('available_to', sa.Date(), nullable=True),
        sa.Column('blocked_dates_json', sa.Text(), nullable=True),
        sa.Column('listing_type', sa.String(length=24), nullable=False, server_default='free'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('premium_expires_at', sa.DateTime(), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'rental_bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rental_listing_id', sa.Integer(), sa.ForeignKey('rental_listings.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('total_days', sa.Integer(), nullable=False),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='PENDING'),
        sa.Column('payment_status', sa.String(length=24), nullable=False, server_default='PENDING'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'rental_pricing_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rental_listing_id', sa.Integer(), sa.ForeignKey('rental_listings.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('price_per_day', sa.Float(), nullable=True),
        sa.Column('multiplier', sa.Float(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payment_intent_id', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=True),
        sa.Column('rental_listing_id', sa.Integer(), sa.ForeignKey('rental_listings.id'), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('provider', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('listing_type', sa.String(length=32), nullable=True),
        sa.Column('merchant_request_id', sa.String(length=128), nullable=True),
        sa.Column('receipt_number', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'payment_transitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('from_status', sa.String(length=16), nullable=False),
        sa.Column('to_status', sa.String(length=16), nullable=False),
        sa.Column('actor_type', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=160), nullable=False),
        sa.Column('reason', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_id', 'idempotency_key', name='uq_payment_transition_key'),
    )
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=False, unique=True),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('payload_hash', sa.String(length=128), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'reviews',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reviewer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('target_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=True),
        sa.Column('rental_listing_id', sa.Integer(), sa.ForeignKey('rental_listings.id'), nullable=True),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'disputes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('rental_bookings.id'), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=40), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('refund_amount', sa.Float(), nullable=True),
        sa.Column('compensation_amount', sa.Float(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'dispute_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('dispute_id', sa.Integer(), sa.ForeignKey('disputes.id'), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_internal', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(length=24), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('title', sa.String(length=160), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=True),
        sa.Column('provider_ref', sa.String(length=120), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('meta', sa.Text(), nullable=True),
    )
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan', sa.String(length=24), nullable=False),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('last_payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'favorites',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=True),
        sa.Column('rental_listing_id', sa.Integer(), sa.ForeignKey('rental_listings.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'listing_id', 'rental_listing_id', name='uq_favorite_target'),
    )
    op.create_table(
        'rental_companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('company_name', sa.String(length=160), nullable=False),
        sa.Column('business_registration', sa.String(length=80), nullable=True),
        sa.Column('kra_pin', sa.String(length=32), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('verification_status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('verified_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_created_updated(),
    )
    op.create_table(
        'banners',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=160), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('image_url', sa.String(length=1024), nullable=False),
        sa.Column('link_url', sa.String(length=1024), nullable=True),
        sa.Column('position', sa.String(length=40), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('click_count', sa.Integer(), nullable=False),
        sa.Column('impression_count', sa.Integer(), nullable=False),
        *_created_updated(),
    )
    op.create_table(
        'content_pages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('slug', sa.String(length=140), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('meta_title', sa.String(length=200), nullable=True),
        sa.Column('meta_description', sa.String(length=320), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False),
        *_created_updated(),
    )
    op.create_table(
        'site_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('site_name', sa.String(length=120), nullable=False),
        sa.Column('site_description', sa.Text(), nullable=True),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('contact_phone', sa.String(length=40), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('social_links_json', sa.Text(), nullable=True),
        sa.Column('seo_settings_json', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'admin_action_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('admin_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('target_type', sa.String(length=40), nullable=False),
        sa.Column('target_id', sa.String(length=64), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'platform_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('subject_type', sa.String(length=80), nullable=True),
        sa.Column('subject_id', sa.String(length=120), nullable=True),
        sa.Column('request_id', sa.String(length=80), nullable=True),
        sa.Column('idempotency_key', sa.String(length=180), nullable=True),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('metadata_json', sa.Text(), nullable=True),
    )
    op.create_table(
        'commissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('rate_bps', sa.Integer(), nullable=False),
        sa.Column('commission_minor', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('type', 'source_id', name='uq_commission_source'),
    )

    for table, column, unique in INDEXES:
        op.create_index(f'ix_{table}_{column}', table, [column], unique=unique)


def downgrade():
    for table, column, _unique in reversed(INDEXES):
        op.drop_index(f'ix_{table}_{column}', table_name=table)
    for table in (
        'commissions',
        'platform_events',
        'admin_action_logs',
        'site_settings',
        'content_pages',
        'banners',
        'rental_companies',
        'favorites',
        'subscriptions',
        'notifications',
        'dispute_messages',
        'disputes',
        'reviews',
        'webhook_events',
        'payment_transitions',
        'payments',
        'rental_pricing_rules',
        'rental_bookings',
        'rental_listings',
        'listings',
        'categories',
        'notification_settings',
        'sms_verifications',
        'user_tokens',
        'refresh_tokens',
        'users',
    ):
        op.drop_table(table)
