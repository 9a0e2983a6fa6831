import json
import unittest

from rls_router.router import KeyBuilder
from rls_router.service_config import (
    RouteLookupConfig,
    ServiceConfig,
    ServiceConfigError,
    bigtable_key_builder,
    bigtable_rls_service_config,
)

RLS_TARGET = "dns:///rls.example.com"


class TestBigtableServiceConfig(unittest.TestCase):
    def test_document_shape(self):
        doc = json.loads(bigtable_rls_service_config(RLS_TARGET, "dns:///data").to_json())
        policy = doc["loadBalancingConfig"][0]["rls_experimental"]
        lookup = policy["routeLookupConfig"]

        self.assertEqual(
            lookup["grpcKeybuilders"],
            [
                {
                    "names": [{"service": "google.bigtable.v2.Bigtable"}],
                    "headers": [
                        {"key": "x-goog-request-params", "names": ["x-goog-request-params"]},
                        {
                            "key": "google-cloud-resource-prefix",
                            "names": ["google-cloud-resource-prefix"],
                        },
                    ],
                    "extraKeys": {"host": "server", "service": "service", "method": "method"},
                }
            ],
        )
        self.assertEqual(lookup["lookupService"], RLS_TARGET)
        self.assertEqual(lookup["lookupServiceTimeout"], "10s")
        self.assertEqual(lookup["maxAge"], "300s")
        self.assertEqual(lookup["staleAge"], "240s")
        self.assertEqual(lookup["cacheSizeBytes"], 1000)
        self.assertEqual(lookup["defaultTarget"], "dns:///data")

        grpclb = {"grpclb": {"childPolicy": [{"pick_first": {}}]}}
        self.assertEqual(
            policy["routeLookupChannelServiceConfig"], {"loadBalancingConfig": [grpclb]}
        )
        self.assertEqual(policy["childPolicy"], [grpclb])
        self.assertEqual(policy["childPolicyConfigTargetFieldName"], "serviceName")

    def test_default_target_disabled(self):
        lookup = bigtable_rls_service_config(RLS_TARGET).to_dict()["loadBalancingConfig"][0][
            "rls_experimental"
        ]["routeLookupConfig"]
        self.assertNotIn("defaultTarget", lookup)

    def test_empty_default_target_passed_through(self):
        lookup = bigtable_rls_service_config(RLS_TARGET, "").to_dict()["loadBalancingConfig"][0][
            "rls_experimental"
        ]["routeLookupConfig"]
        self.assertEqual(lookup["defaultTarget"], "")

    def test_from_dict(self):
        built = bigtable_rls_service_config(RLS_TARGET, "dns:///data")
        parsed = ServiceConfig.from_dict(json.loads(built.to_json()))
        self.assertEqual(parsed.route_lookup_config.lookup_service, RLS_TARGET)
        self.assertEqual(parsed.route_lookup_config.grpc_keybuilders, [bigtable_key_builder()])
        self.assertEqual(parsed.to_dict(), built.to_dict())


class TestValidation(unittest.TestCase):
    def lookup(self, **overrides):
        kwargs = {
            "grpc_keybuilders": [bigtable_key_builder()],
            "lookup_service": RLS_TARGET,
        }
        kwargs.update(overrides)
        return RouteLookupConfig(**kwargs)

    def test_valid(self):
        self.lookup().validate()

    def test_invalid(self):
        cases = {
            "no builders": {"grpc_keybuilders": []},
            "no lookup service": {"lookup_service": ""},
            "zero timeout": {"lookup_service_timeout": 0},
            "negative max age": {"max_age": -1},
            "zero cache": {"cache_size_bytes": 0},
            "builder without names": {"grpc_keybuilders": [KeyBuilder(names=())]},
            "duplicate header keys": {
                "grpc_keybuilders": [
                    KeyBuilder(names=(("svc", ""),), headers=(("k", ("a",)), ("k", ("b",))))
                ]
            },
            "extra key collides": {
                "grpc_keybuilders": [
                    KeyBuilder(
                        names=(("svc", ""),),
                        headers=(("server", ("a",)),),
                        extra_keys=(("host", "server"),),
                    )
                ]
            },
            "unknown extra key": {
                "grpc_keybuilders": [
                    KeyBuilder(names=(("svc", ""),), extra_keys=(("region", "r"),))
                ]
            },
        }
        for name, overrides in cases.items():
            with self.subTest(name):
                with self.assertRaises(ServiceConfigError):
                    self.lookup(**overrides).validate()

    def test_to_json_validates(self):
        config = bigtable_rls_service_config("")
        with self.assertRaises(ServiceConfigError):
            config.to_json()

    def test_from_dict_rejects_other_policies(self):
        with self.assertRaises(ServiceConfigError):
            ServiceConfig.from_dict({"loadBalancingConfig": [{"round_robin": {}}]})
        with self.assertRaises(ServiceConfigError):
            ServiceConfig.from_dict({"loadBalancingConfig": []})


if __name__ == "__main__":
    unittest.main()
