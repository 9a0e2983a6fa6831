import fnmatch
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from prometheus_client import Counter

ROUTE_RESOLUTIONS = Counter(
    "rls_route_resolutions_total", "Route resolutions", ["outcome"]
)

WILDCARD = "*"

DEFAULT_MAX_AGE = 300.0
DEFAULT_STALE_AGE = 240.0


class RoutingError(Exception):
    pass


class PatternError(RoutingError):
    pass


class NoRouteError(RoutingError):
    """No rule matched and no default target is configured.

    Callers are expected to fall back to a statically configured target
    instead of retrying the lookup.
    """

    def __init__(self, key):
        super().__init__(f"No route for key {key}")
        self.key = key


def parse_duration(value):
    """Parses a protobuf JSON duration such as "10s" or "1.5s" into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    elif isinstance(value, str) and value.endswith("s"):
        try:
            seconds = float(value[:-1])
        except ValueError:
            raise ValueError(f"Invalid duration {value!r}") from None
    else:
        raise ValueError(f"Invalid duration {value!r}")
    if not math.isfinite(seconds):
        raise ValueError(f"Invalid duration {value!r}")
    return seconds


def format_duration(seconds):
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{seconds}s"


@dataclass(frozen=True)
class RouteKey:
    pairs: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "RouteKey":
        return cls(tuple((str(k), str(v)) for k, v in mapping.items()))

    def get(self, name: str) -> Optional[str]:
        for key, value in self.pairs:
            if key == name:
                return value
        return None

    def __str__(self):
        return "{" + ",".join(f"{k}={v}" for k, v in self.pairs) + "}"


def _parse_pattern(pattern):
    if not pattern or not pattern.strip():
        raise PatternError("Empty pattern")
    pattern = pattern.strip()
    if pattern == WILDCARD:
        return None

    terms = []
    for raw in pattern.split(","):
        term = raw.strip()
        if not term:
            raise PatternError(f"Empty term in pattern {pattern!r}")
        name, sep, value = term.partition("=")
        name = name.strip()
        if not sep or not name:
            raise PatternError(f"Term {term!r} is not of the form name=value")
        terms.append((name, value.strip()))
    return tuple(terms)


@dataclass(frozen=True)
class Rule:
    pattern: str
    target: str
    # None means the rule matches every key.
    terms: Optional[Tuple[Tuple[str, str], ...]] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        if not isinstance(self.pattern, str):
            raise PatternError(f"Pattern must be a string, got {self.pattern!r}")
        if not isinstance(self.target, str):
            raise PatternError(f"Target must be a string, got {self.target!r}")
        if not self.target:
            raise PatternError(f"Rule {self.pattern!r} has an empty target")
        object.__setattr__(self, "terms", _parse_pattern(self.pattern))

    def matches(self, key: RouteKey) -> bool:
        if self.terms is None:
            return True
        for name, expected in self.terms:
            actual = key.get(name)
            if actual is None:
                return False
            if not fnmatch.fnmatchcase(actual, expected):
                return False
        return True


@dataclass(frozen=True)
class RoutingTable:
    rules: Tuple[Rule, ...] = ()
    default_target: Optional[str] = None
    max_age: float = DEFAULT_MAX_AGE
    stale_age: float = DEFAULT_STALE_AGE

    def __post_init__(self):
        object.__setattr__(self, "rules", tuple(self.rules))
        if self.default_target is not None and not isinstance(self.default_target, str):
            raise PatternError(f"Default target must be a string, got {self.default_target!r}")
        if not math.isfinite(self.max_age) or self.max_age <= 0:
            raise PatternError(f"max_age must be positive, got {self.max_age}")
        if not math.isfinite(self.stale_age) or self.stale_age <= 0:
            raise PatternError(f"stale_age must be positive, got {self.stale_age}")
        if self.stale_age > self.max_age:
            logging.warning(
                f"stale_age {self.stale_age}s exceeds max_age {self.max_age}s, clamping"
            )
            object.__setattr__(self, "stale_age", self.max_age)

    @classmethod
    def from_dict(cls, data: Mapping) -> "RoutingTable":
        if not isinstance(data, dict):
            raise PatternError(f"Routing table must be an object, got {type(data).__name__}")
        unknown = set(data) - {"rules", "defaultTarget", "maxAge", "staleAge"}
        if unknown:
            raise PatternError(f"Unknown routing table fields: {sorted(unknown)}")

        rules = []
        entries = data.get("rules", [])
        if not isinstance(entries, list):
            raise PatternError(f"rules must be a list, got {type(entries).__name__}")
        for entry in entries:
            if not isinstance(entry, dict) or set(entry) != {"pattern", "target"}:
                raise PatternError(f"Rule must have pattern and target: {entry}")
            rules.append(Rule(entry["pattern"], entry["target"]))

        try:
            max_age = parse_duration(data.get("maxAge", DEFAULT_MAX_AGE))
            stale_age = parse_duration(data.get("staleAge", DEFAULT_STALE_AGE))
        except ValueError as e:
            raise PatternError(str(e)) from e

        return cls(
            rules=tuple(rules),
            default_target=data.get("defaultTarget"),
            max_age=max_age,
            stale_age=stale_age,
        )


def load_routing_table(path) -> RoutingTable:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise PatternError(f"Invalid routing table {path}: {e}") from e
    table = RoutingTable.from_dict(data)
    logging.info(
        f"Loaded {len(table.rules)} routing rules from {path} (default target: {table.default_target!r})"
    )
    return table


@dataclass(frozen=True)
class Decision:
    target: str
    # Index of the matching rule, None when the default target was used.
    rule_index: Optional[int]
    created_at: float
    max_age: float
    stale_age: float

    @property
    def expires_at(self):
        return self.created_at + self.max_age

    @property
    def stale_at(self):
        return self.created_at + self.stale_age

    def is_expired(self, now):
        return now >= self.expires_at

    def is_stale(self, now):
        return now >= self.stale_at


class RouteResolver:
    """First-match lookup over an immutable routing table."""

    def __init__(self, table: RoutingTable, clock: Callable[[], float] = time.time):
        self._table = table
        self._clock = clock

    @property
    def table(self):
        return self._table

    def _decision(self, target, rule_index):
        return Decision(
            target=target,
            rule_index=rule_index,
            created_at=self._clock(),
            max_age=self._table.max_age,
            stale_age=self._table.stale_age,
        )

    def resolve(self, key: RouteKey) -> Decision:
        for index, rule in enumerate(self._table.rules):
            if rule.matches(key):
                ROUTE_RESOLUTIONS.labels(outcome="rule").inc()
                return self._decision(rule.target, index)

        if self._table.default_target:
            ROUTE_RESOLUTIONS.labels(outcome="default").inc()
            return self._decision(self._table.default_target, None)

        ROUTE_RESOLUTIONS.labels(outcome="no_route").inc()
        raise NoRouteError(key)

    def resolve_target(self, key: RouteKey, fallback: str) -> str:
        try:
            decision = self.resolve(key)
        except NoRouteError as e:
            logging.warning(f"{e}, falling back to {fallback}")
            return fallback
        logging.info(f"Routing key {key} to {decision.target}")
        return decision.target


@dataclass(frozen=True)
class KeyBuilder:
    """Extracts a route key from request attributes.

    `names` holds (service, method) pairs, method may be empty to match every
    method of the service. `headers` maps a key name to the request headers
    consulted for it, in order. `extra_keys` renames the host, service and
    method attributes.
    """

    names: Tuple[Tuple[str, str], ...]
    headers: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    extra_keys: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "names", tuple(tuple(n) for n in self.names))
        object.__setattr__(
            self, "headers", tuple((k, tuple(v)) for k, v in self.headers)
        )
        object.__setattr__(self, "extra_keys", tuple(tuple(e) for e in self.extra_keys))

    def applies_to(self, service: str, method: str = "") -> bool:
        for name_service, name_method in self.names:
            if name_service != service:
                continue
            if not name_method or name_method == method:
                return True
        return False

    def build(
        self,
        service: str,
        method: str = "",
        metadata: Optional[Iterable[Tuple[str, str]]] = None,
        host: str = "",
    ) -> RouteKey:
        values: Dict[str, List[str]] = {}
        for name, value in metadata or ():
            values.setdefault(name.lower(), []).append(value)

        pairs = []
        for key, header_names in self.headers:
            for header in header_names:
                found = values.get(header.lower())
                if found:
                    pairs.append((key, ",".join(found)))
                    break

        attributes = {"host": host, "service": service, "method": method}
        renamed = dict(self.extra_keys)
        for attribute in ("host", "service", "method"):
            key = renamed.get(attribute)
            if key and attributes[attribute]:
                pairs.append((key, attributes[attribute]))
        return RouteKey(tuple(pairs))


def first_key_builder(builders: Sequence[KeyBuilder], service, method=""):
    for builder in builders:
        if builder.applies_to(service, method):
            return builder
    return None
