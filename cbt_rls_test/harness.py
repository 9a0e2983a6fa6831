"""
Cloud Bigtable RLS test.

Creates a table, writes a few greetings through a data channel that uses the
RLS load-balancing policy, reads them back and deletes the table.
"""
import argparse
import contextlib
import dataclasses
import json
import logging
import os
import sys
import time
import urllib.parse
import uuid
from dataclasses import dataclass
from typing import Optional

import google.auth.exceptions
import grpc
from google.api_core import exceptions
from prometheus_client import Counter, Histogram, start_http_server

from rls_router.router import (
    KeyBuilder,
    RouteResolver,
    RoutingError,
    RoutingTable,
    first_key_builder,
    load_routing_table,
)
from rls_router.service_config import (
    BIGTABLE_SERVICE,
    REQUEST_PARAMS_HEADER,
    RESOURCE_PREFIX_HEADER,
    ServiceConfigError,
    bigtable_rls_service_config,
)

from .sessions import (
    AdminSession,
    DataSession,
    Mutation,
    MutationError,
    create_data_channel,
    is_already_exists,
    strip_scheme,
)

STAGE_LATENCY = Histogram("cbt_stage_latency_seconds", "Harness stage latency", ["stage"])
STAGE_COUNT = Counter("cbt_stage_count_total", "Harness stage count", ["stage", "status"])

ADMIN_TEST_ENDPOINT = "dns:///test-bigtableadmin.sandbox.googleapis.com"
DATA_TEST_ENDPOINT = "dns:///test-bigtable.sandbox.googleapis.com"
RLS_TEST_ENDPOINT = "dns:///test-bigtablerls.sandbox.googleapis.com"
RLS_DEFAULT_TARGET = "dns:///test-bigtable.sandbox.googleapis.com"

GREETINGS = ["Hello World!", "Hello Bigtable!", "Hello Python!"]

# Errors a stage may hit that abort the run.
STAGE_ERRORS = (
    exceptions.GoogleAPICallError,
    grpc.RpcError,
    MutationError,
    google.auth.exceptions.GoogleAuthError,
    RoutingError,
    ServiceConfigError,
    OSError,
)


class HarnessError(Exception):
    def __init__(self, stage, message):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage


@dataclass(frozen=True)
class HarnessConfig:
    project_id: str
    instance_id: str
    table_id: str
    column_family: str = "cf1"
    column_qualifier: str = "greeting"
    row_key_prefix: str = "row_key_"
    app_profile: Optional[str] = None
    # None disables the default target; a string is passed through verbatim.
    default_target: Optional[str] = None
    skip_table_deletion: bool = False
    admin_endpoint: str = ADMIN_TEST_ENDPOINT
    data_endpoint: str = DATA_TEST_ENDPOINT
    rls_endpoint: str = RLS_TEST_ENDPOINT
    routes_file: Optional[str] = None
    table_creation_wait: float = 15.0
    metrics_port: int = 0

    @property
    def resource_prefix(self):
        return f"projects/{self.project_id}/instances/{self.instance_id}"

    @property
    def table_name(self):
        return f"{self.resource_prefix}/tables/{self.table_id}"


def _env(name, default):
    return os.environ.get(f"CBT_{name.upper()}", default)


def _env_bool(name):
    return _env(name, "").lower() in ("1", "true", "yes")


def parse_args(argv=None) -> HarnessConfig:
    parser = argparse.ArgumentParser(description="Cloud Bigtable RLS test")
    parser.add_argument("--project_id", default=_env("project_id", "directpath-prod-manual-testing"),
                        help="GCP project to use")
    parser.add_argument("--instance_id", default=_env("instance_id", "blackbox-us-central1-b"),
                        help="Cloud Bigtable instance to use")
    parser.add_argument("--table_id", default=_env("table_id", "rls-test-table"),
                        help="Cloud Bigtable table to use")
    parser.add_argument("--column_family", default=_env("column_family", "cf1"),
                        help="Cloud Bigtable column family to use")
    parser.add_argument("--column_qualifier", default=_env("column_qualifier", "greeting"),
                        help="Cloud Bigtable column qualifier to use")
    parser.add_argument("--row_key_prefix", default=_env("row_key_prefix", "row_key_"),
                        help="Cloud Bigtable row key prefix to use")
    parser.add_argument("--app_profile", default=_env("app_profile", ""),
                        help="Application profile to use. If unspecified, the default app profile is used")
    parser.add_argument("--enable_default_target", action="store_true",
                        default=_env_bool("enable_default_target"),
                        help="Whether to set a default target in the service config")
    parser.add_argument("--skip_table_deletion", action="store_true",
                        default=_env_bool("skip_table_deletion"),
                        help="Whether to skip table deletion at the end")
    parser.add_argument("--routes_file", default=_env("routes_file", None),
                        help="JSON file with client-side routing rules for the data channel")
    parser.add_argument("--table_creation_wait", type=float,
                        default=float(_env("table_creation_wait", "15")),
                        help="Seconds to wait for table creation to take effect")
    parser.add_argument("--metrics_port", type=int, default=int(_env("metrics_port", "0")),
                        help="Port for the Prometheus metrics server, 0 disables it")
    args = parser.parse_args(argv)

    return HarnessConfig(
        project_id=args.project_id,
        instance_id=args.instance_id,
        table_id=args.table_id,
        column_family=args.column_family,
        column_qualifier=args.column_qualifier,
        row_key_prefix=args.row_key_prefix,
        app_profile=args.app_profile or None,
        default_target=RLS_DEFAULT_TARGET if args.enable_default_target else None,
        skip_table_deletion=args.skip_table_deletion,
        routes_file=args.routes_file,
        table_creation_wait=args.table_creation_wait,
        metrics_port=args.metrics_port,
    )


@contextlib.contextmanager
def _stage(name):
    start = time.time()
    status = "success"
    try:
        yield
    except HarnessError:
        status = "error"
        raise
    except STAGE_ERRORS as e:
        status = "error"
        raise HarnessError(name, str(e)) from e
    finally:
        STAGE_LATENCY.labels(stage=name).observe(time.time() - start)
        STAGE_COUNT.labels(stage=name, status=status).inc()


def create_table(admin, config: HarnessConfig) -> bool:
    """Makes sure the table and its column family exist.

    Returns True when the table was created by this call.
    """
    with _stage("create_table"):
        if admin.table_exists(config.table_id):
            logging.info(f"Table {config.table_id!r} already exists")
            return False

        try:
            admin.create_table(config.table_id)
        except STAGE_ERRORS as e:
            if not is_already_exists(e):
                raise
            logging.info(f"Table {config.table_id!r} was created concurrently")

        try:
            admin.create_column_family(config.table_id, config.column_family)
        except STAGE_ERRORS as e:
            if not is_already_exists(e):
                raise
        return True


def write_to_table(data, config: HarnessConfig):
    row_keys = []
    with _stage("write"):
        for i, greeting in enumerate(GREETINGS):
            row_key = f"{config.row_key_prefix}{i}"
            mutation = Mutation().set(config.column_family, config.column_qualifier, greeting)
            data.apply_mutation(config.table_id, row_key, mutation)
            logging.info(f"Wrote greeting {greeting!r} to table")
            row_keys.append(row_key)
    return row_keys


def log_row(row):
    for family, cell in row.cells():
        logging.info(
            f"Read row with ColumnFamily: {family!r}, RowKey: {row.key!r}, "
            f"Column: {cell.column!r}, Timestamp: {cell.timestamp.isoformat()}, "
            f"Value: {cell.value.decode('utf-8', errors='replace')!r}"
        )


def read_single_row(data, config: HarnessConfig):
    row_key = f"{config.row_key_prefix}0"
    with _stage("read_row"):
        row = data.read_row(config.table_id, row_key)
    if row is None:
        logging.warning(f"Row {row_key!r} not found in table {config.table_id!r}")
        return None
    log_row(row)
    return row


def read_entire_table(data, config: HarnessConfig) -> int:
    count = 0
    with _stage("scan"):
        for row in data.scan_rows(config.table_id, config.row_key_prefix):
            log_row(row)
            count += 1
    logging.info(f"Read {count} rows with prefix {config.row_key_prefix!r}")
    return count


def delete_table(admin, config: HarnessConfig):
    with _stage("delete_table"):
        admin.delete_table(config.table_id)
    logging.info(f"Table {config.table_id!r} deleted")


def build_resolver(config: HarnessConfig) -> RouteResolver:
    if config.routes_file:
        table = load_routing_table(config.routes_file)
        if table.default_target is None:
            table = dataclasses.replace(table, default_target=config.default_target)
    else:
        table = RoutingTable(default_target=config.default_target)
    return RouteResolver(table)


def request_metadata(config: HarnessConfig):
    params = {"table_name": config.table_name}
    if config.app_profile:
        params["app_profile_id"] = config.app_profile
    return [
        (REQUEST_PARAMS_HEADER, urllib.parse.urlencode(params)),
        (RESOURCE_PREFIX_HEADER, config.resource_prefix),
    ]


def select_data_target(
    config: HarnessConfig, resolver: RouteResolver, key_builder: Optional[KeyBuilder]
) -> str:
    """Picks the data channel target, falling back to the fixed data endpoint."""
    if key_builder is None:
        logging.warning(f"No key builder for {BIGTABLE_SERVICE}, dialing {config.data_endpoint}")
        return config.data_endpoint
    key = key_builder.build(
        BIGTABLE_SERVICE,
        metadata=request_metadata(config),
        host=strip_scheme(config.data_endpoint),
    )
    return resolver.resolve_target(key, config.data_endpoint)


def run(config: HarnessConfig, admin, data, sleep=time.sleep):
    logging.info(
        f"Attempting to create table {config.table_id!r} with column family {config.column_family!r}..."
    )
    if create_table(admin, config):
        logging.info(
            f"Table {config.table_id!r} with column family {config.column_family!r} created"
        )
        logging.info(f"Waiting {config.table_creation_wait}s for table creation to take effect...")
        sleep(config.table_creation_wait)

    logging.info(f"Attempting to write some greetings to table {config.table_id!r}...")
    write_to_table(data, config)

    logging.info(f"Attempting to read a single row from table {config.table_id!r}...")
    read_single_row(data, config)

    logging.info(f"Attempting to read the entire table {config.table_id!r}...")
    read_entire_table(data, config)

    if config.skip_table_deletion:
        logging.info(f"Skipping deletion of table {config.table_id!r}")
        return

    logging.info(f"Attempting to delete table {config.table_id!r}...")
    delete_table(admin, config)


def open_sessions(config: HarnessConfig):
    with _stage("setup"):
        service_config = bigtable_rls_service_config(config.rls_endpoint, config.default_target)
        key_builder = first_key_builder(
            service_config.route_lookup_config.grpc_keybuilders, BIGTABLE_SERVICE
        )
        target = select_data_target(config, build_resolver(config), key_builder)
        with contextlib.ExitStack() as stack:
            admin = AdminSession(config.project_id, config.instance_id, config.admin_endpoint)
            stack.enter_context(admin)
            channel = create_data_channel(target, service_config)
            stack.callback(channel.close)
            data = DataSession(
                config.project_id,
                config.instance_id,
                channel,
                strip_scheme(target),
                app_profile=config.app_profile,
            )
            # Ownership moves to the caller once every session is open.
            stack.pop_all()
    return admin, data


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "level": record.levelname,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
            "trace_id": getattr(record, "trace_id", None),
        }
        return json.dumps(log_record)


class TraceIdFilter(logging.Filter):
    def __init__(self, trace_id):
        super().__init__()
        self.trace_id = trace_id

    def filter(self, record):
        if not hasattr(record, "trace_id"):
            record.trace_id = self.trace_id
        return True


def configure_logging(trace_id):
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(TraceIdFilter(trace_id))
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(handler)


def main(argv=None) -> int:
    configure_logging(str(uuid.uuid4()))
    config = parse_args(argv)
    logging.info(
        f"Running CBT RLS test on project {config.project_id!r} and instance {config.instance_id!r}..."
    )

    try:
        if config.metrics_port:
            with _stage("metrics"):
                start_http_server(config.metrics_port)
        admin, data = open_sessions(config)
        with admin, data:
            run(config, admin, data)
    except HarnessError as e:
        logging.error(f"CBT RLS test aborted: {e}")
        return 1
    logging.info("CBT RLS test finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
