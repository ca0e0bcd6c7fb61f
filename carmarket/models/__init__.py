from carmarket.models.user import User
from carmarket.models.refresh_token import RefreshToken
from carmarket.models.user_token import UserToken, SmsVerification
from carmarket.models.settings import NotificationSettings
from carmarket.models.category import Category
from carmarket.models.listing import Listing
from carmarket.models.rental import RentalListing, RentalBooking, PricingRule
from carmarket.models.payment import Payment, PaymentTransition
from carmarket.models.webhook_event import WebhookEvent
from carmarket.models.review import Review
from carmarket.models.dispute import Dispute, DisputeMessage
from carmarket.models.notification import Notification
from carmarket.models.subscription import Subscription
from carmarket.models.favorite import Favorite
from carmarket.models.company import RentalCompany
from carmarket.models.content import Banner, ContentPage, SiteSettings
from carmarket.models.admin_action import AdminActionLog
from carmarket.models.platform_event import PlatformEvent
from carmarket.models.commission import Commission

__all__ = [
    "User",
    "RefreshToken",
    "UserToken",
    "SmsVerification",
    "NotificationSettings",
    "Category",
    "Listing",
    "RentalListing",
    "RentalBooking",
    "PricingRule",
    "Payment",
    "PaymentTransition",
    "WebhookEvent",
    "Review",
    "Dispute",
    "DisputeMessage",
    "Notification",
    "Subscription",
    "Favorite",
    "RentalCompany",
    "Banner",
    "ContentPage",
    "SiteSettings",
    "AdminActionLog",
    "PlatformEvent",
    "Commission",
]
