from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import load_json, dump_json, iso


class Banner(db.Model):
    __tablename__ = "banners"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(1024), nullable=False)
    link_url = db.Column(db.String(1024), nullable=True)
    position = db.Column(db.String(40), nullable=False, index=True)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    click_count = db.Column(db.Integer, nullable=False, default=0)
    impression_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def is_showing(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        if not self.is_active:
            return False
        if self.start_date and self.start_date > now:
            return False
        if self.end_date and self.end_date < now:
            return False
        return True

    def to_dict(self):
        return {
            "id": int(self.id),
            "title": self.title or "",
            "description": self.description or "",
            "image_url": self.image_url or "",
            "link_url": self.link_url or "",
            "position": self.position or "",
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "is_active": bool(self.is_active),
            "click_count": int(self.click_count or 0),
            "impression_count": int(self.impression_count or 0),
            "created_at": iso(self.created_at),
        }


class ContentPage(db.Model):
    __tablename__ = "content_pages"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(140), nullable=False, unique=True, index=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    meta_title = db.Column(db.String(200), nullable=True)
    meta_description = db.Column(db.String(320), nullable=True)
    is_published = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "slug": self.slug or "",
            "title": self.title or "",
            "content": self.content or "",
            "meta_title": self.meta_title or "",
            "meta_description": self.meta_description or "",
            "is_published": bool(self.is_published),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class SiteSettings(db.Model):
    __tablename__ = "site_settings"

    id = db.Column(db.Integer, primary_key=True)
    site_name = db.Column(db.String(120), nullable=False, default="")
    site_description = db.Column(db.Text, nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(40), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    social_links_json = db.Column(db.Text, nullable=True)
    seo_settings_json = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def social_links(self) -> dict:
        return load_json(self.social_links_json, {})

    @social_links.setter
    def social_links(self, value) -> None:
        self.social_links_json = dump_json(value if isinstance(value, dict) else {})

    @property
    def seo_settings(self) -> dict:
        return load_json(self.seo_settings_json, {})

    @seo_settings.setter
    def seo_settings(self, value) -> None:
        self.seo_settings_json = dump_json(value if isinstance(value, dict) else {})

    def to_dict(self):
        return {
            "id": int(self.id),
            "site_name": self.site_name or "",
            "site_description": self.site_description or "",
            "contact_email": self.contact_email or "",
            "contact_phone": self.contact_phone or "",
            "address": self.address or "",
            "social_links": self.social_links,
            "seo_settings": self.seo_settings,
            "updated_at": iso(self.updated_at),
        }
