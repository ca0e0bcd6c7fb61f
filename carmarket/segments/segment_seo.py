from __future__ import annotations

import os
from datetime import datetime
from xml.sax.saxutils import escape

from flask import Blueprint, Response, request
from sqlalchemy import or_

from carmarket.models import ContentPage, Listing, RentalListing


seo_bp = Blueprint("seo_bp", __name__)

DISALLOWED_PATHS = ("/api/", "/admin/", "/dashboard/", "/auth/", "/profile/", "/bookings/", "/favorites/")
BLOCKED_BOTS = ("AhrefsBot", "MJ12bot", "DotBot", "SemrushBot", "MajesticSEO", "BLEXBot")

# path, changefreq, priority
STATIC_PAGES = (
    ("/", "daily", "1.0"),
    ("/cars", "daily", "0.9"),
    ("/hire", "daily", "0.9"),
    ("/search", "daily", "0.8"),
    ("/sell", "monthly", "0.7"),
    ("/about", "monthly", "0.5"),
    ("/contact", "monthly", "0.5"),
    ("/privacy", "yearly", "0.3"),
    ("/terms", "yearly", "0.3"),
)
SITEMAP_ITEM_LIMIT = 5000


def site_url() -> str:
    base = (os.getenv("APP_URL") or "").strip() or request.host_url
    return base.rstrip("/")


def _url(loc: str, lastmod: datetime | None, changefreq: str, priority: str) -> str:
    parts = [f"<loc>{escape(loc)}</loc>"]
    if lastmod is not None:
        parts.append(f"<lastmod>{lastmod.date().isoformat()}</lastmod>")
    parts.append(f"<changefreq>{changefreq}</changefreq>")
    parts.append(f"<priority>{priority}</priority>")
    return "  <url>" + "".join(parts) + "</url>"


@seo_bp.get("/robots.txt")
def robots_txt():
    lines = ["User-agent: *", "Allow: /"]
    lines.extend(f"Disallow: {path}" for path in DISALLOWED_PATHS)
    lines.append("Crawl-delay: 1")
    for bot in BLOCKED_BOTS:
        lines.extend(["", f"User-agent: {bot}", "Disallow: /"])
    lines.extend(["", f"Sitemap: {site_url()}/sitemap.xml", ""])
    return Response("\n".join(lines), mimetype="text/plain")


@seo_bp.get("/sitemap.xml")
def sitemap_xml():
    base = site_url()
    now = datetime.utcnow()
    entries = [_url(f"{base}{path}", now, freq, prio) for path, freq, prio in STATIC_PAGES]

    listings = (
        Listing.query.filter(Listing.status == "active", or_(Listing.expires_at.is_(None), Listing.expires_at > now))
        .order_by(Listing.updated_at.desc())
        .limit(SITEMAP_ITEM_LIMIT)
        .all()
    )
    entries.extend(_url(f"{base}/cars/{row.id}", row.updated_at, "weekly", "0.8") for row in listings)

    rentals = (
        RentalListing.query.filter(
            RentalListing.is_active.is_(True), or_(RentalListing.expires_at.is_(None), RentalListing.expires_at > now)
        )
        .order_by(RentalListing.updated_at.desc())
        .limit(SITEMAP_ITEM_LIMIT)
        .all()
    )
    entries.extend(_url(f"{base}/hire/{row.id}", row.updated_at, "weekly", "0.7") for row in rentals)

    pages = ContentPage.query.filter_by(is_published=True).order_by(ContentPage.slug.asc()).all()
    entries.extend(_url(f"{base}/pages/{row.slug}", row.updated_at, "monthly", "0.5") for row in pages)

    body = "\n".join(
        ['<?xml version="1.0" encoding="UTF-8"?>', '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">', *entries, "</urlset>", ""]
    )
    return Response(body, mimetype="application/xml")
