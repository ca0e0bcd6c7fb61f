from __future__ import annotations

from datetime import datetime

from carmarket.models import Listing, RefreshToken, RentalListing, User


def deactivate_account(user: User, now: datetime | None = None) -> None:
    """Disable the account, hide its inventory and revoke refresh tokens; the caller commits."""
    now = now or datetime.utcnow()
    user.is_active = False
    user.updated_at = now
    Listing.query.filter(Listing.user_id == int(user.id), Listing.status == "active").update(
        {"status": "inactive", "updated_at": now}, synchronize_session=False
    )
    RentalListing.query.filter(RentalListing.user_id == int(user.id)).update(
        {"is_active": False, "updated_at": now}, synchronize_session=False
    )
    RefreshToken.revoke_all_for_user(int(user.id), when=now)
