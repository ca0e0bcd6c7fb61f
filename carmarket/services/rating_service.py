from __future__ import annotations

from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import RentalCompany, Review


def verification_score(average: float, total: int, *, company_verified: bool = False) -> int:
    if average >= 4.5 and total >= 10:
        score = 100
    elif average >= 4.0 and total >= 5:
        score = 80
    elif average >= 3.5 and total >= 3:
        score = 60
    elif average >= 3.0 and total >= 1:
        score = 40
    else:
        score = 20
    if company_verified:
        score += 20
    return min(100, score)


def average_rating(target_id: int) -> dict:
    avg, count = (
        db.session.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.target_id == int(target_id))
        .one()
    )
    return {"average": round(float(avg or 0.0), 1), "count": int(count or 0)}


def rating_summary(target_id: int, *, recent_limit: int = 5) -> dict:
    stats = average_rating(target_id)
    distribution = {str(star): 0 for star in (5, 4, 3, 2, 1)}
    rows = (
        db.session.query(Review.rating, func.count(Review.id))
        .filter(Review.target_id == int(target_id))
        .group_by(Review.rating)
        .all()
    )
    for rating, count in rows:
        key = str(int(rating or 0))
        if key in distribution:
            distribution[key] = int(count)
    company = RentalCompany.query.filter_by(user_id=int(target_id)).first()
    recent = Review.query.filter_by(target_id=int(target_id)).order_by(Review.created_at.desc()).limit(int(recent_limit)).all()
    return {
        "average_rating": stats["average"],
        "total_reviews": stats["count"],
        "rating_distribution": distribution,
        "recent_reviews": [r.to_dict() for r in recent],
        "verification_score": verification_score(
            stats["average"], stats["count"], company_verified=bool(company and company.is_verified)
        ),
    }
