"""
Enumeration definitions for the pivot report backend.

All enums inherit from both `str` and `Enum` so pydantic models serialize
them as their plain string values in API responses.
"""

from enum import Enum


class SaleKind(str, Enum):
    """
    Discriminator for CRM flat rows.

    - subscription: a subscription (primary or upsell subscription)
    - one_time_sale: a standalone one-time invoice; the CRM reports it as 'ots'
    - upsell: an invoice tagged with its parent subscription
    """
    SUBSCRIPTION = "subscription"
    ONE_TIME_SALE = "one_time_sale"
    UPSELL = "upsell"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.lower() == "ots":
            return cls.ONE_TIME_SALE
        return None


class SortDirection(str, Enum):
    """UI-facing sort direction."""
    ASCEND = "ascend"
    DESCEND = "descend"


class QuerySortDirection(str, Enum):
    """Sort direction as sent to the row source."""
    ASC = "ASC"
    DESC = "DESC"

    @classmethod
    def from_ui(cls, direction: "SortDirection | str | None") -> "QuerySortDirection":
        """Map 'ascend' to ASC; anything else (including None) to DESC."""
        if direction is not None and SortDirection(direction) == SortDirection.ASCEND:
            return cls.ASC
        return cls.DESC


class ReconcilerState(str, Enum):
    """
    Lifecycle of the expansion reconciler.

    Uninitialized -> Restoring -> Idle <-> Expanding/Collapsing.
    Loading covers a whole-tree fetch of the root level.
    """
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    RESTORING = "restoring"
    IDLE = "idle"
    EXPANDING = "expanding"
    COLLAPSING = "collapsing"


class MarketingDimension(str, Enum):
    """Dimensions available on ad-spend rows."""
    NETWORK = "network"
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"
    DATE = "date"
    CLASSIFIED_PRODUCT = "classifiedProduct"
    CLASSIFIED_COUNTRY = "classifiedCountry"


class SalesDimension(str, Enum):
    """Dimensions available on CRM sales rows."""
    COUNTRY = "country"
    PRODUCT_GROUP = "productGroup"
    PRODUCT = "product"
    SOURCE = "source"
    DATE = "date"


class FilterOperator(str, Enum):
    """
    Operators for user-defined table filters.

    The value "Unknown" with equals/not_equals selects missing values.
    """
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
