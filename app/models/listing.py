from enum import Enum


LISTINGS_TABLE = "listings"


class ListingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_REVIEW = "pending_review"
    LIVE = "live"
    HIDDEN = "hidden"
