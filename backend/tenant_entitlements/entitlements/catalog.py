"""
Entitlement Catalog - static tier -> {limits, features} mapping.

Provides:
- UNLIMITED: Distinguished sentinel for limits without a ceiling
- TierLimits: Numeric limits for one tier
- Capability: How an operation maps onto features, limits and rate classes
- CatalogEntry: Everything a single tier grants
- EntitlementCatalog: Validated, immutable, versioned catalog
- EntitlementCatalogLoader: Thread-safe singleton loader for
  config/entitlement_catalog.json

CRITICAL: This is the source of truth for features and limits.
Do NOT hardcode tier checks elsewhere. The catalog is validated when it is
built; a higher tier must grant everything a lower tier grants.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from tenant_entitlements.entitlements.errors import ConfigurationError
from tenant_entitlements.models.subscription import SubscriptionTier

logger = logging.getLogger(__name__)

Tier = SubscriptionTier

DEFAULT_CATALOG_PATH = Path(__file__).parent.parent / "config" / "entitlement_catalog.json"

DEFAULT_ENDPOINT_CLASS = "default"


class _Unlimited:
    """Sentinel for an unbounded limit. Compares greater than every integer."""

    _instance: Optional["_Unlimited"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __str__(self) -> str:
        return "unlimited"

    def __reduce__(self):
        return (_Unlimited, ())

    def __lt__(self, other):
        return False

    def __le__(self, other):
        return other is self

    def __gt__(self, other):
        return other is not self

    def __ge__(self, other):
        return True


UNLIMITED = _Unlimited()

LimitValue = Union[int, _Unlimited]

LIMIT_KEYS = (
    "max_external_users",
    "max_libraries",
    "api_calls_per_month",
    "max_client_spaces",
    "audit_retention_days",
    "max_admins",
)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_limit_key(key: str) -> str:
    """Accept both maxLibraries and max_libraries."""
    return _CAMEL_RE.sub("_", key).lower()


def is_unlimited(value: Any) -> bool:
    return value is UNLIMITED


def parse_limit_value(raw: Any, where: str) -> LimitValue:
    """Parse a JSON limit: a non-negative integer or the string "unlimited"."""
    if raw is UNLIMITED or (isinstance(raw, str) and raw.lower() == "unlimited"):
        return UNLIMITED
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigurationError(f"{where}: limit must be an integer or 'unlimited', got {raw!r}")
    if raw < 0:
        raise ConfigurationError(
            f"{where}: negative limits are not allowed, use 'unlimited' instead of {raw}"
        )
    return raw


def serialize_limit_value(value: LimitValue) -> Union[int, str]:
    return "unlimited" if is_unlimited(value) else value


def limit_allows(limit: LimitValue, current_usage: int) -> bool:
    """True when one more unit fits under the limit."""
    if is_unlimited(limit):
        return True
    return current_usage < limit


@dataclass(frozen=True)
class TierLimits:
    """Usage limits for a tier."""

    max_external_users: LimitValue
    max_libraries: LimitValue
    api_calls_per_month: LimitValue
    max_client_spaces: LimitValue
    audit_retention_days: LimitValue
    max_admins: LimitValue

    def get(self, limit_key: str) -> LimitValue:
        key = normalize_limit_key(limit_key)
        if key not in LIMIT_KEYS:
            raise KeyError(limit_key)
        return getattr(self, key)

    def items(self) -> List[tuple]:
        return [(key, getattr(self, key)) for key in LIMIT_KEYS]

    def to_dict(self) -> Dict[str, Union[int, str]]:
        return {key: serialize_limit_value(value) for key, value in self.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str) -> "TierLimits":
        normalized = {normalize_limit_key(k): v for k, v in data.items()}
        unknown = set(normalized) - set(LIMIT_KEYS)
        if unknown:
            raise ConfigurationError(f"{where}: unknown limits {sorted(unknown)}")
        missing = [key for key in LIMIT_KEYS if key not in normalized]
        if missing:
            raise ConfigurationError(f"{where}: missing limits {missing}")
        return cls(**{
            key: parse_limit_value(normalized[key], f"{where}.{key}")
            for key in LIMIT_KEYS
        })


@dataclass(frozen=True)
class Capability:
    """
    An operation a tenant can request.

    feature: feature flag the tier must grant (None = every tier)
    endpoint_class: rate-limit bucket the operation counts against
    read_only: still allowed after the subscription lapses
    limit_key: numeric limit normally checked with caller-supplied usage
    """

    name: str
    feature: Optional[str] = None
    endpoint_class: str = DEFAULT_ENDPOINT_CLASS
    read_only: bool = False
    limit_key: Optional[str] = None


@dataclass(frozen=True)
class CatalogEntry:
    """Complete entitlements for a single tier."""

    tier: Tier
    display_name: str
    limits: TierLimits
    features: FrozenSet[str] = frozenset()
    rate_limits: Mapping[str, LimitValue] = field(default_factory=dict)
    price_monthly_cents: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "display_name": self.display_name,
            "price_monthly_cents": self.price_monthly_cents,
            "features": sorted(self.features),
            "limits": self.limits.to_dict(),
            "rate_limits": {k: serialize_limit_value(v) for k, v in self.rate_limits.items()},
        }


class EntitlementCatalog:
    """
    Closed, versioned catalog of tier entitlements.

    Immutable after construction and safe to share across threads.

    Usage:
        catalog = get_entitlement_catalog()
        if not catalog.has_feature(Tier.STARTER, "exportAuditLog"):
            required = catalog.minimum_tier_for("exportAuditLog")
    """

    def __init__(
        self,
        entries: Iterable[CatalogEntry],
        capabilities: Iterable[Capability] = (),
        version: str = "unversioned",
        known_features: Optional[Iterable[str]] = None,
    ):
        self.version = version
        self._entries: Dict[Tier, CatalogEntry] = {}
        for entry in entries:
            if entry.tier in self._entries:
                raise ConfigurationError(f"Tier {entry.tier.value} defined more than once")
            self._entries[entry.tier] = entry
        self._capabilities: Dict[str, Capability] = {c.name: c for c in capabilities}
        if known_features is None:
            known = set()
            for entry in self._entries.values():
                known |= entry.features
            self._known_features = frozenset(known)
        else:
            self._known_features = frozenset(known_features)
        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Fail fast on misconfiguration.

        Raises:
            ConfigurationError: On missing tiers, unknown references or any
                tier granting less than a lower tier.
        """
        missing = [t.value for t in Tier if t not in self._entries]
        if missing:
            raise ConfigurationError(f"Catalog {self.version} is missing tiers {missing}")

        endpoint_classes = None
        for tier in Tier:
            entry = self._entries[tier]
            unknown = entry.features - self._known_features
            if unknown:
                raise ConfigurationError(f"{tier.value}: unknown features {sorted(unknown)}")
            classes = set(entry.rate_limits)
            if DEFAULT_ENDPOINT_CLASS not in classes:
                raise ConfigurationError(f"{tier.value}: rate_limits must define '{DEFAULT_ENDPOINT_CLASS}'")
            if endpoint_classes is None:
                endpoint_classes = classes
            elif classes != endpoint_classes:
                raise ConfigurationError(
                    f"{tier.value}: rate limit classes {sorted(classes)} differ from "
                    f"{sorted(endpoint_classes)}"
                )

        tiers = list(Tier)
        for lower, higher in zip(tiers, tiers[1:]):
            low, high = self._entries[lower], self._entries[higher]
            lost = low.features - high.features
            if lost:
                raise ConfigurationError(
                    f"{higher.value} must include every {lower.value} feature; missing {sorted(lost)}"
                )
            for key, low_value in low.limits.items():
                high_value = high.limits.get(key)
                if not high_value >= low_value:
                    raise ConfigurationError(
                        f"{higher.value}.{key}={high_value!r} is below "
                        f"{lower.value}.{key}={low_value!r}"
                    )
            for endpoint_class, low_value in low.rate_limits.items():
                high_value = high.rate_limits[endpoint_class]
                if not high_value >= low_value:
                    raise ConfigurationError(
                        f"{higher.value} rate limit '{endpoint_class}'={high_value!r} is below "
                        f"{lower.value}={low_value!r}"
                    )

        for capability in self._capabilities.values():
            if capability.feature and capability.feature not in self._known_features:
                raise ConfigurationError(
                    f"Capability {capability.name} references unknown feature {capability.feature}"
                )
            if capability.limit_key and normalize_limit_key(capability.limit_key) not in LIMIT_KEYS:
                raise ConfigurationError(
                    f"Capability {capability.name} references unknown limit {capability.limit_key}"
                )
            if capability.endpoint_class not in endpoint_classes:
                raise ConfigurationError(
                    f"Capability {capability.name} uses unknown endpoint class "
                    f"{capability.endpoint_class}"
                )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def tiers(self) -> List[Tier]:
        return list(Tier)

    def entry(self, tier: Tier) -> CatalogEntry:
        return self._entries[Tier.parse(tier)]

    def limits_for(self, tier: Tier) -> TierLimits:
        return self.entry(tier).limits

    def features_for(self, tier: Tier) -> FrozenSet[str]:
        return self.entry(tier).features

    def limit_value(self, tier: Tier, limit_key: str) -> LimitValue:
        return self.limits_for(tier).get(limit_key)

    def rate_limit_for(self, tier: Tier, endpoint_class: str) -> LimitValue:
        rate_limits = self.entry(tier).rate_limits
        return rate_limits.get(endpoint_class, rate_limits[DEFAULT_ENDPOINT_CLASS])

    def capability(self, name: str) -> Capability:
        """Capability definition; unknown names are privileged default-class writes."""
        capability = self._capabilities.get(name)
        if capability is None:
            if name in self._known_features:
                return Capability(name=name, feature=name)
            logger.warning("Unknown capability requested", extra={"capability": name})
            return Capability(name=name)
        return capability

    def required_feature(self, capability: str) -> Optional[str]:
        if capability in self._known_features:
            return capability
        return self.capability(capability).feature

    def has_feature(self, tier: Tier, capability: str) -> bool:
        """
        Check whether a tier grants a feature.

        Accepts a feature name or a capability name. Capabilities without a
        required feature are granted on every tier.
        """
        feature = self.required_feature(capability)
        if feature is None:
            return True
        return feature in self.features_for(tier)

    def minimum_tier_for(self, capability: str) -> Optional[Tier]:
        """Lowest tier granting the feature behind a capability, or None if no tier does."""
        for tier in Tier:
            if self.has_feature(tier, capability):
                return tier
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "tiers": [self._entries[t].to_dict() for t in Tier],
        }

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntitlementCatalog":
        """Build and validate a catalog from its JSON document."""
        version = str(data.get("version", "unversioned"))
        tiers_data = data.get("tiers")
        if not isinstance(tiers_data, list) or not tiers_data:
            raise ConfigurationError("Catalog must define a non-empty 'tiers' list")

        feature_keys: Optional[set] = None
        entries = []
        for tier_data in tiers_data:
            try:
                tier = Tier.parse(tier_data.get("tier", ""))
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            where = f"tiers.{tier.value}"

            features_data = tier_data.get("features", {})
            if feature_keys is None:
                feature_keys = set(features_data)
            elif set(features_data) != feature_keys:
                raise ConfigurationError(
                    f"{where}: feature keys {sorted(features_data)} differ from {sorted(feature_keys)}"
                )
            for key, value in features_data.items():
                if not isinstance(value, bool):
                    raise ConfigurationError(f"{where}.features.{key} must be true or false")

            rate_limits = {
                name: parse_limit_value(value, f"{where}.rate_limits.{name}")
                for name, value in tier_data.get("rate_limits", {}).items()
            }

            entries.append(CatalogEntry(
                tier=tier,
                display_name=tier_data.get("display_name", tier.display_name),
                price_monthly_cents=int(tier_data.get("price_monthly_cents", 0)),
                features=frozenset(k for k, v in features_data.items() if v),
                limits=TierLimits.from_dict(tier_data.get("limits", {}), f"{where}.limits"),
                rate_limits=MappingProxyType(rate_limits),
            ))

        capabilities = [
            Capability(
                name=name,
                feature=entry.get("feature"),
                endpoint_class=entry.get("endpoint_class", DEFAULT_ENDPOINT_CLASS),
                read_only=bool(entry.get("read_only", False)),
                limit_key=entry.get("limit_key"),
            )
            for name, entry in data.get("capabilities", {}).items()
        ]

        return cls(entries, capabilities, version=version, known_features=feature_keys or set())

    @classmethod
    def load(cls, path: Union[str, Path]) -> "EntitlementCatalog":
        path = Path(path)
        try:
            with open(path, "r") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read entitlement catalog {path}: {exc}") from exc
        catalog = cls.from_dict(raw)
        logger.info(
            "Loaded entitlement catalog",
            extra={"path": str(path), "version": catalog.version},
        )
        return catalog


class EntitlementCatalogLoader:
    """
    Singleton loader for the entitlement catalog.

    Thread-safe with lazy loading and atomic reload.
    """

    _instance: Optional["EntitlementCatalogLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return
        self._config_path = Path(config_path) if config_path else DEFAULT_CATALOG_PATH
        self._load_lock = Lock()
        self._catalog = EntitlementCatalog.load(self._config_path)
        self._initialized = True

    @property
    def catalog(self) -> EntitlementCatalog:
        return self._catalog

    def reload(self) -> EntitlementCatalog:
        """
        Reload from disk. The previous catalog stays in place if the new one
        fails validation, so readers never see a half-loaded state.
        """
        with self._load_lock:
            try:
                catalog = EntitlementCatalog.load(self._config_path)
            except ConfigurationError:
                logger.error("Catalog reload failed, keeping previous catalog", exc_info=True)
                raise
            self._catalog = catalog
        return catalog


def get_entitlement_catalog(config_path: Optional[str] = None) -> EntitlementCatalog:
    """Get the process-wide catalog."""
    return EntitlementCatalogLoader(config_path).catalog


def reset_entitlement_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    EntitlementCatalogLoader._instance = None
