"""
Tests for the token rate table and top-up catalog.
"""

import pytest

from metering.exceptions import UnknownActionError, UnknownTopupPackageError
from metering.services.rate_table import (
    INBOX_FEATURE,
    TOKEN_RATES,
    TOPUP_PACKAGES,
    get_cost,
    get_rate,
    get_topup_package,
)


class TestRateTable:
    """Action costs."""

    def test_every_rate_is_keyed_by_its_action(self) -> None:
        for action, rate in TOKEN_RATES.items():
            assert rate.action == action
            assert rate.tokens > 0

    @pytest.mark.parametrize(
        "action,cost",
        [
            ("message_sent", 10),
            ("template_sent", 5),
            ("automation_triggered", 2),
            ("tag_added", 1),
            ("note_created", 1),
            ("status_changed", 1),
        ],
    )
    def test_inbox_event_costs(self, action: str, cost: int) -> None:
        assert get_cost(action) == cost
        assert get_rate(action).feature_key == INBOX_FEATURE

    def test_studio_actions_have_their_own_features(self) -> None:
        assert get_rate("graph_generate_image").feature_key == "graph"
        assert get_rate("tracks_generate").feature_key == "tracks"
        assert get_rate("helper_chat").feature_key == "helper"

    def test_unknown_action_raises(self) -> None:
        with pytest.raises(UnknownActionError) as exc_info:
            get_rate("teleport")

        assert exc_info.value.action == "teleport"


class TestTopupCatalog:
    """Purchasable packages."""

    def test_packages_include_bonus_tokens(self) -> None:
        assert get_topup_package("pkg_50k").tokens == 50_000
        assert get_topup_package("pkg_100k").tokens == 105_000
        assert get_topup_package("pkg_500k").tokens == 550_000

    def test_packages_keyed_by_their_key(self) -> None:
        for key, package in TOPUP_PACKAGES.items():
            assert package.key == key
            assert package.amount_minor > 0

    def test_unknown_package_raises(self) -> None:
        with pytest.raises(UnknownTopupPackageError):
            get_topup_package("pkg_free")
