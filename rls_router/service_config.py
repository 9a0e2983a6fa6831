"""Typed gRPC service config for the RLS load-balancing policy.

The document is built from dataclasses, validated, and only then rendered to
the JSON form the channel expects under the `grpc.service_config` option.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .router import KeyBuilder, format_duration, parse_duration

BIGTABLE_SERVICE = "google.bigtable.v2.Bigtable"
REQUEST_PARAMS_HEADER = "x-goog-request-params"
RESOURCE_PREFIX_HEADER = "google-cloud-resource-prefix"

POLICY_NAME = "rls_experimental"
EXTRA_KEY_ATTRIBUTES = ("host", "service", "method")


class ServiceConfigError(ValueError):
    pass


def grpclb_pick_first():
    return {"grpclb": {"childPolicy": [{"pick_first": {}}]}}


def key_builder_to_dict(builder: KeyBuilder) -> Dict[str, Any]:
    names = []
    for service, method in builder.names:
        name = {"service": service}
        if method:
            name["method"] = method
        names.append(name)
    out = {"names": names}
    if builder.headers:
        out["headers"] = [
            {"key": key, "names": list(header_names)}
            for key, header_names in builder.headers
        ]
    if builder.extra_keys:
        out["extraKeys"] = dict(builder.extra_keys)
    return out


def key_builder_from_dict(data: Dict[str, Any]) -> KeyBuilder:
    try:
        names = tuple((n["service"], n.get("method", "")) for n in data["names"])
        headers = tuple(
            (h["key"], tuple(h["names"])) for h in data.get("headers", [])
        )
    except (KeyError, TypeError) as e:
        raise ServiceConfigError(f"Invalid key builder: {data!r}") from e
    extra_keys = tuple(data.get("extraKeys", {}).items())
    return KeyBuilder(names=names, headers=headers, extra_keys=extra_keys)


def validate_key_builder(builder: KeyBuilder):
    if not builder.names:
        raise ServiceConfigError("Key builder has no names")
    for service, _method in builder.names:
        if not service:
            raise ServiceConfigError("Key builder name has an empty service")

    seen = set()
    for key, header_names in builder.headers:
        if not key:
            raise ServiceConfigError("Header matcher has an empty key")
        if key in seen:
            raise ServiceConfigError(f"Duplicate header key {key!r}")
        if not header_names:
            raise ServiceConfigError(f"Header matcher {key!r} has no header names")
        seen.add(key)

    for attribute, key in builder.extra_keys:
        if attribute not in EXTRA_KEY_ATTRIBUTES:
            raise ServiceConfigError(f"Unknown extra key attribute {attribute!r}")
        if key in seen:
            raise ServiceConfigError(f"Extra key {key!r} collides with another key")
        seen.add(key)


@dataclass
class RouteLookupConfig:
    grpc_keybuilders: List[KeyBuilder]
    lookup_service: str
    lookup_service_timeout: float = 10.0
    max_age: float = 300.0
    stale_age: float = 240.0
    cache_size_bytes: int = 1000
    # None omits the field; any string, even empty, is passed through.
    default_target: Optional[str] = None

    def validate(self):
        if not self.grpc_keybuilders:
            raise ServiceConfigError("At least one key builder is required")
        for builder in self.grpc_keybuilders:
            validate_key_builder(builder)
        if not self.lookup_service:
            raise ServiceConfigError("lookup_service must be set")
        for name in ("lookup_service_timeout", "max_age", "stale_age"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ServiceConfigError(f"{name} must be positive")
        if self.cache_size_bytes <= 0:
            raise ServiceConfigError("cache_size_bytes must be positive")

    def to_dict(self):
        out = {
            "grpcKeybuilders": [key_builder_to_dict(b) for b in self.grpc_keybuilders],
            "lookupService": self.lookup_service,
            "lookupServiceTimeout": format_duration(self.lookup_service_timeout),
            "maxAge": format_duration(self.max_age),
            "staleAge": format_duration(self.stale_age),
            "cacheSizeBytes": self.cache_size_bytes,
        }
        if self.default_target is not None:
            out["defaultTarget"] = self.default_target
        return out

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(
                grpc_keybuilders=[
                    key_builder_from_dict(b) for b in data.get("grpcKeybuilders", [])
                ],
                lookup_service=data.get("lookupService", ""),
                lookup_service_timeout=parse_duration(
                    data.get("lookupServiceTimeout", "10s")
                ),
                max_age=parse_duration(data.get("maxAge", "300s")),
                stale_age=parse_duration(data.get("staleAge", "240s")),
                cache_size_bytes=int(data.get("cacheSizeBytes", 1000)),
                default_target=data.get("defaultTarget"),
            )
        except ValueError as e:
            raise ServiceConfigError(str(e)) from e


@dataclass
class RlsPolicyConfig:
    route_lookup_config: RouteLookupConfig
    child_policy: List[Dict[str, Any]] = field(
        default_factory=lambda: [grpclb_pick_first()]
    )
    child_policy_config_target_field_name: str = "serviceName"
    route_lookup_channel_service_config: Optional[Dict[str, Any]] = None

    def validate(self):
        self.route_lookup_config.validate()
        if not self.child_policy:
            raise ServiceConfigError("child_policy must not be empty")
        if not self.child_policy_config_target_field_name:
            raise ServiceConfigError("child_policy_config_target_field_name must be set")

    def to_dict(self):
        out = {"routeLookupConfig": self.route_lookup_config.to_dict()}
        if self.route_lookup_channel_service_config is not None:
            out["routeLookupChannelServiceConfig"] = self.route_lookup_channel_service_config
        out["childPolicy"] = self.child_policy
        out["childPolicyConfigTargetFieldName"] = self.child_policy_config_target_field_name
        return {POLICY_NAME: out}

    @classmethod
    def from_dict(cls, data):
        body = data.get(POLICY_NAME)
        if body is None:
            raise ServiceConfigError(f"Expected a {POLICY_NAME} policy, got {sorted(data)}")
        return cls(
            route_lookup_config=RouteLookupConfig.from_dict(
                body.get("routeLookupConfig", {})
            ),
            child_policy=body.get("childPolicy", []),
            child_policy_config_target_field_name=body.get(
                "childPolicyConfigTargetFieldName", ""
            ),
            route_lookup_channel_service_config=body.get(
                "routeLookupChannelServiceConfig"
            ),
        )


@dataclass
class ServiceConfig:
    load_balancing_config: List[RlsPolicyConfig]

    def validate(self):
        if not self.load_balancing_config:
            raise ServiceConfigError("load_balancing_config must not be empty")
        for policy in self.load_balancing_config:
            policy.validate()

    def to_dict(self):
        return {"loadBalancingConfig": [p.to_dict() for p in self.load_balancing_config]}

    def to_json(self):
        self.validate()
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data):
        config = cls(
            load_balancing_config=[
                RlsPolicyConfig.from_dict(p) for p in data.get("loadBalancingConfig", [])
            ]
        )
        config.validate()
        return config

    @property
    def route_lookup_config(self) -> RouteLookupConfig:
        return self.load_balancing_config[0].route_lookup_config


def bigtable_key_builder() -> KeyBuilder:
    return KeyBuilder(
        names=((BIGTABLE_SERVICE, ""),),
        headers=(
            (REQUEST_PARAMS_HEADER, (REQUEST_PARAMS_HEADER,)),
            (RESOURCE_PREFIX_HEADER, (RESOURCE_PREFIX_HEADER,)),
        ),
        extra_keys=(("host", "server"), ("service", "service"), ("method", "method")),
    )


def bigtable_rls_service_config(
    lookup_service: str, default_target: Optional[str] = None
) -> ServiceConfig:
    """Service config routing Bigtable data RPCs through RLS.

    The lookup channel also gets its own service config since the Bigtable
    RLS server is only reachable through grpclb.
    """
    route_lookup = RouteLookupConfig(
        grpc_keybuilders=[bigtable_key_builder()],
        lookup_service=lookup_service,
        default_target=default_target,
    )
    policy = RlsPolicyConfig(
        route_lookup_config=route_lookup,
        route_lookup_channel_service_config={
            "loadBalancingConfig": [grpclb_pick_first()]
        },
    )
    return ServiceConfig(load_balancing_config=[policy])

