"""Business taxonomy used to classify inbox email.

Each category materializes on the mail provider as a label under a fixed
namespace, e.g. ``vendor-supplier`` -> ``AI/Vendor-Supplier``.
"""

from enum import StrEnum

LABEL_NAMESPACE = "AI"


class Category(StrEnum):
    """Closed set of business categories."""

    PROSPECT_LEAD = "prospect-lead"
    ACTIVE_CLIENT = "active-client"
    VENDOR_SUPPLIER = "vendor-supplier"
    PARTNERSHIP_COLLABORATION = "partnership-collaboration"
    RECRUITMENT_HR = "recruitment-hr"
    MEDIA_PR = "media-pr"
    LEGAL_COMPLIANCE = "legal-compliance"
    ADMINISTRATIVE = "administrative"


# Designated default bucket for unusable AI replies.
FALLBACK_CATEGORY = Category.ADMINISTRATIVE

CATEGORY_DESCRIPTIONS: dict[Category, str] = {
    Category.PROSPECT_LEAD: "New business opportunities, inbound leads, sales inquiries",
    Category.ACTIVE_CLIENT: "Communication with existing clients about ongoing work",
    Category.VENDOR_SUPPLIER: "Vendors, suppliers, invoices, service providers, billing",
    Category.PARTNERSHIP_COLLABORATION: "Strategic partnerships, joint ventures, collaborations",
    Category.RECRUITMENT_HR: "Job applications, candidates, hiring, staff and HR matters",
    Category.MEDIA_PR: "Press, marketing, media requests, public relations",
    Category.LEGAL_COMPLIANCE: "Contracts, legal review, regulatory and compliance matters",
    Category.ADMINISTRATIVE: "Newsletters, notifications, system messages, general admin",
}

CATEGORY_COLORS: dict[Category, str] = {
    Category.PROSPECT_LEAD: "#16a766",
    Category.ACTIVE_CLIENT: "#4a86e8",
    Category.VENDOR_SUPPLIER: "#ffad47",
    Category.PARTNERSHIP_COLLABORATION: "#a479e2",
    Category.RECRUITMENT_HR: "#f691b3",
    Category.MEDIA_PR: "#2da2bb",
    Category.LEGAL_COMPLIANCE: "#cc3a21",
    Category.ADMINISTRATIVE: "#666666",
}


def label_name(category: Category | str) -> str:
    """Provider label name for a category: ``AI/Title-Cased-Parts``."""
    parts = str(category).split("-")
    formatted = "-".join(p[:1].upper() + p[1:].lower() for p in parts)
    return f"{LABEL_NAMESPACE}/{formatted}"


_LABEL_TO_CATEGORY = {label_name(c): c for c in Category}


def category_for_label(name: str) -> Category | None:
    """Inverse of :func:`label_name`; None for names outside the taxonomy."""
    return _LABEL_TO_CATEGORY.get(name)


def is_taxonomy_label(name: str) -> bool:
    """True if a provider label lives under the taxonomy namespace."""
    return name.startswith(f"{LABEL_NAMESPACE}/")


def parse_category(value: str | None) -> Category | None:
    """Lenient parse of an AI-supplied category string."""
    if not value:
        return None
    normalized = value.strip().lower().replace("_", "-").replace(" ", "-")
    try:
        return Category(normalized)
    except ValueError:
        return None
