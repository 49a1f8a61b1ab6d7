"""
Tests for the entitlement catalog.

Tests cover:
- Lookups against the bundled catalog
- Tier monotonicity (property-based)
- Fail-fast validation of misconfigured catalogs
- Singleton loader and atomic reload
"""

import copy
import json

import pytest
from hypothesis import given, strategies as st

from tenant_entitlements.entitlements.catalog import (
    DEFAULT_CATALOG_PATH,
    LIMIT_KEYS,
    UNLIMITED,
    EntitlementCatalog,
    EntitlementCatalogLoader,
    get_entitlement_catalog,
    limit_allows,
    normalize_limit_key,
    reset_entitlement_catalog,
)
from tenant_entitlements.entitlements.errors import ConfigurationError
from tenant_entitlements.models.subscription import SubscriptionTier

with open(DEFAULT_CATALOG_PATH, "r") as _f:
    BUNDLED_DOCUMENT = json.load(_f)

BUNDLED = EntitlementCatalog.from_dict(BUNDLED_DOCUMENT)
TIERS = list(SubscriptionTier)


def _document():
    return copy.deepcopy(BUNDLED_DOCUMENT)


def _tier(document, tier):
    return next(t for t in document["tiers"] if t["tier"] == tier)


class TestCatalogLookups:

    def test_bundled_catalog_loads(self, catalog):
        assert catalog.version == "2026-03"
        assert catalog.tiers() == TIERS

    def test_starter_limits(self, catalog):
        limits = catalog.limits_for(SubscriptionTier.STARTER)
        assert limits.max_external_users == 50
        assert limits.max_libraries == 25
        assert limits.max_client_spaces == 5
        assert limits.max_admins == 2

    def test_enterprise_limits_are_unlimited(self, catalog):
        assert catalog.limit_value(SubscriptionTier.ENTERPRISE, "max_libraries") is UNLIMITED
        assert catalog.limit_value(SubscriptionTier.ENTERPRISE, "max_admins") == 999

    def test_camel_case_limit_keys_accepted(self, catalog):
        assert normalize_limit_key("maxLibraries") == "max_libraries"
        assert catalog.limit_value(SubscriptionTier.STARTER, "maxLibraries") == 25

    def test_unknown_limit_key_raises(self, catalog):
        with pytest.raises(KeyError):
            catalog.limit_value(SubscriptionTier.STARTER, "max_widgets")

    def test_feature_gated_capability(self, catalog):
        assert not catalog.has_feature(SubscriptionTier.STARTER, "exportAuditLog")
        assert catalog.has_feature(SubscriptionTier.PROFESSIONAL, "exportAuditLog")
        assert catalog.minimum_tier_for("exportAuditLog") == SubscriptionTier.PROFESSIONAL

    def test_feature_names_accepted_directly(self, catalog):
        assert catalog.has_feature(SubscriptionTier.BUSINESS, "sso_integration")
        assert catalog.minimum_tier_for("custom_branding") == SubscriptionTier.ENTERPRISE

    def test_capability_without_feature_granted_on_every_tier(self, catalog):
        for tier in TIERS:
            assert catalog.has_feature(tier, "createLibrary")
        assert catalog.minimum_tier_for("createLibrary") == SubscriptionTier.STARTER

    def test_capability_definition(self, catalog):
        capability = catalog.capability("createLibrary")
        assert capability.endpoint_class == "write"
        assert capability.limit_key == "max_libraries"
        assert capability.read_only is False
        assert catalog.capability("getAuditLogs").read_only is True

    def test_unknown_capability_is_privileged_default(self, catalog):
        capability = catalog.capability("deleteEverything")
        assert capability.endpoint_class == "default"
        assert capability.read_only is False
        assert capability.feature is None

    def test_rate_limit_falls_back_to_default_class(self, catalog):
        assert catalog.rate_limit_for(SubscriptionTier.STARTER, "write") == 30
        assert catalog.rate_limit_for(SubscriptionTier.STARTER, "unheard_of") == 60

    def test_entry_to_dict_serializes_unlimited(self, catalog):
        data = catalog.entry(SubscriptionTier.ENTERPRISE).to_dict()
        assert data["limits"]["max_libraries"] == "unlimited"
        assert "custom_branding" in data["features"]


class TestUnlimited:

    def test_unlimited_exceeds_any_integer(self):
        assert UNLIMITED > 10 ** 12
        assert not UNLIMITED < 0
        assert UNLIMITED >= UNLIMITED

    def test_limit_allows(self):
        assert limit_allows(25, 24)
        assert not limit_allows(25, 25)
        assert limit_allows(UNLIMITED, 10 ** 9)


class TestTierMonotonicity:

    @given(
        lower=st.sampled_from(TIERS),
        higher=st.sampled_from(TIERS),
        limit_key=st.sampled_from(LIMIT_KEYS),
    )
    def test_higher_tier_limits_never_lower(self, lower, higher, limit_key):
        if lower > higher:
            lower, higher = higher, lower
        assert BUNDLED.limit_value(higher, limit_key) >= BUNDLED.limit_value(lower, limit_key)

    @given(lower=st.sampled_from(TIERS), higher=st.sampled_from(TIERS))
    def test_higher_tier_features_are_superset(self, lower, higher):
        if lower > higher:
            lower, higher = higher, lower
        assert BUNDLED.features_for(lower) <= BUNDLED.features_for(higher)

    @given(values=st.lists(st.integers(min_value=0, max_value=10_000), min_size=4, max_size=4))
    def test_catalog_accepted_only_when_limits_non_decreasing(self, values):
        document = _document()
        for tier_data, value in zip(document["tiers"], values):
            tier_data["limits"]["max_libraries"] = value

        if values == sorted(values):
            catalog = EntitlementCatalog.from_dict(document)
            assert catalog.limit_value(SubscriptionTier.ENTERPRISE, "max_libraries") == values[-1]
        else:
            with pytest.raises(ConfigurationError):
                EntitlementCatalog.from_dict(document)


class TestCatalogValidation:

    def test_missing_tier_rejected(self):
        document = _document()
        document["tiers"] = [t for t in document["tiers"] if t["tier"] != "business"]
        with pytest.raises(ConfigurationError, match="missing tiers"):
            EntitlementCatalog.from_dict(document)

    def test_higher_tier_losing_feature_rejected(self):
        document = _document()
        _tier(document, "business")["features"]["audit_export"] = False
        with pytest.raises(ConfigurationError, match="audit_export"):
            EntitlementCatalog.from_dict(document)

    def test_unlimited_lower_tier_rejected_when_higher_is_bounded(self):
        document = _document()
        _tier(document, "professional")["limits"]["max_admins"] = "unlimited"
        with pytest.raises(ConfigurationError, match="max_admins"):
            EntitlementCatalog.from_dict(document)

    def test_negative_limit_rejected(self):
        document = _document()
        _tier(document, "starter")["limits"]["max_admins"] = -1
        with pytest.raises(ConfigurationError, match="negative"):
            EntitlementCatalog.from_dict(document)

    def test_missing_limit_rejected(self):
        document = _document()
        del _tier(document, "starter")["limits"]["max_admins"]
        with pytest.raises(ConfigurationError, match="missing limits"):
            EntitlementCatalog.from_dict(document)

    def test_inconsistent_feature_keys_rejected(self):
        document = _document()
        _tier(document, "starter")["features"]["teleportation"] = False
        with pytest.raises(ConfigurationError, match="feature keys"):
            EntitlementCatalog.from_dict(document)

    def test_rate_limit_regression_rejected(self):
        document = _document()
        _tier(document, "professional")["rate_limits"]["export"] = 1
        with pytest.raises(ConfigurationError, match="export"):
            EntitlementCatalog.from_dict(document)

    def test_rate_classes_must_match(self):
        document = _document()
        del _tier(document, "enterprise")["rate_limits"]["search"]
        with pytest.raises(ConfigurationError, match="rate limit classes"):
            EntitlementCatalog.from_dict(document)

    def test_capability_with_unknown_feature_rejected(self):
        document = _document()
        document["capabilities"]["teleport"] = {"feature": "teleportation"}
        with pytest.raises(ConfigurationError, match="unknown feature"):
            EntitlementCatalog.from_dict(document)

    def test_capability_with_unknown_limit_rejected(self):
        document = _document()
        document["capabilities"]["createWidget"] = {"limit_key": "max_widgets"}
        with pytest.raises(ConfigurationError, match="unknown limit"):
            EntitlementCatalog.from_dict(document)

    def test_unreadable_file_is_configuration_error(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            EntitlementCatalog.load(path)

    def test_round_trip_to_dict(self, catalog):
        data = catalog.to_dict()
        assert data["version"] == "2026-03"
        assert [t["tier"] for t in data["tiers"]] == [t.value for t in TIERS]


class TestCatalogLoader:

    def test_singleton_returns_same_catalog(self):
        assert get_entitlement_catalog() is get_entitlement_catalog()

    def test_reset_loads_fresh_instance(self):
        first = get_entitlement_catalog()
        reset_entitlement_catalog()
        assert get_entitlement_catalog() is not first

    def test_reload_keeps_previous_catalog_on_error(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(BUNDLED_DOCUMENT))
        loader = EntitlementCatalogLoader(str(path))
        before = loader.catalog

        document = _document()
        _tier(document, "business")["features"]["audit_export"] = False
        path.write_text(json.dumps(document))

        with pytest.raises(ConfigurationError):
            loader.reload()
        assert loader.catalog is before

    def test_reload_picks_up_changes(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(BUNDLED_DOCUMENT))
        loader = EntitlementCatalogLoader(str(path))

        document = _document()
        document["version"] = "2026-04"
        path.write_text(json.dumps(document))

        assert loader.reload().version == "2026-04"
        assert get_entitlement_catalog().version == "2026-04"
