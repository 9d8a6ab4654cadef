"""
Token rate table and top-up package catalog.

Maps metered action names to token costs and purchasable packages to token
quantities. Both catalogs are static configuration.
"""

from metering.exceptions import UnknownActionError, UnknownTopupPackageError
from metering.models.domain import TokenRate, TopupPackage

# Feature key shared by inbox automation events
INBOX_FEATURE = "inbox"


# Studio, messaging and helper actions
TOKEN_RATES: dict[str, TokenRate] = {
    "helper_chat": TokenRate(
        action="helper_chat",
        tokens=5,
        description="Helper assistant chat reply",
        feature_key="helper",
    ),
    "meta_send_message": TokenRate(
        action="meta_send_message",
        tokens=10,
        description="Outbound WhatsApp message",
        feature_key="meta_send",
    ),
    "mass_blast_send": TokenRate(
        action="mass_blast_send",
        tokens=10,
        description="Mass blast message (per recipient)",
        feature_key="mass_blast",
    ),
    "graph_generate_image": TokenRate(
        action="graph_generate_image",
        tokens=50,
        description="Studio image generation",
        feature_key="graph",
    ),
    "tracks_generate": TokenRate(
        action="tracks_generate",
        tokens=100,
        description="Studio music track generation",
        feature_key="tracks",
    ),
    "office_export": TokenRate(
        action="office_export",
        tokens=20,
        description="Office document export",
        feature_key="office",
    ),
    # Inbox events
    "message_sent": TokenRate(
        action="message_sent",
        tokens=10,
        description="Outbound message sent",
        feature_key=INBOX_FEATURE,
    ),
    "template_sent": TokenRate(
        action="template_sent",
        tokens=5,
        description="Template message sent",
        feature_key=INBOX_FEATURE,
    ),
    "automation_triggered": TokenRate(
        action="automation_triggered",
        tokens=2,
        description="Automation rule executed",
        feature_key=INBOX_FEATURE,
    ),
    "tag_added": TokenRate(
        action="tag_added",
        tokens=1,
        description="Tag added to thread",
        feature_key=INBOX_FEATURE,
    ),
    "note_created": TokenRate(
        action="note_created",
        tokens=1,
        description="Internal note created",
        feature_key=INBOX_FEATURE,
    ),
    "status_changed": TokenRate(
        action="status_changed",
        tokens=1,
        description="Thread status updated",
        feature_key=INBOX_FEATURE,
    ),
}


# Top-up packages (amount in currency minor units)
TOPUP_PACKAGES: dict[str, TopupPackage] = {
    "pkg_50k": TopupPackage(
        key="pkg_50k",
        tokens=50_000,
        amount_minor=50_000,
        label="50,000 Tokens",
    ),
    "pkg_100k": TopupPackage(
        key="pkg_100k",
        tokens=105_000,
        amount_minor=100_000,
        label="100,000 + Bonus",
    ),
    "pkg_500k": TopupPackage(
        key="pkg_500k",
        tokens=550_000,
        amount_minor=500_000,
        label="500,000 + Bonus",
    ),
}


def get_rate(action: str) -> TokenRate:
    """
    Get the token rate for a metered action.

    Raises:
        UnknownActionError: If the action is not in the rate table
    """
    rate = TOKEN_RATES.get(action)
    if rate is None:
        raise UnknownActionError(action)
    return rate


def get_cost(action: str) -> int:
    """Get the token cost of an action."""
    return get_rate(action).tokens


def get_topup_package(package_key: str) -> TopupPackage:
    """
    Get a top-up package by key.

    Raises:
        UnknownTopupPackageError: If the package key is not in the catalog
    """
    package = TOPUP_PACKAGES.get(package_key)
    if package is None:
        raise UnknownTopupPackageError(package_key)
    return package
