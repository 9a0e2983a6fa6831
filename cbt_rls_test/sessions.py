import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import google.auth
import google.auth.transport.grpc
import google.auth.transport.requests
import grpc
from google.api_core import exceptions
from google.cloud import bigtable
from google.cloud.bigtable.row_set import RowSet
from google.cloud.bigtable_v2 import BigtableClient
from google.cloud.bigtable_v2.services.bigtable.transports import BigtableGrpcTransport

DATA_SCOPE = "https://www.googleapis.com/auth/bigtable.data"

# Matches the per-call limits the data plane allows for large rows.
MAX_MESSAGE_SIZE = 1 << 28


class MutationError(Exception):
    def __init__(self, row_key, code, message):
        super().__init__(f"Mutation of row {row_key!r} failed with code {code}: {message}")
        self.row_key = row_key
        self.code = code


def strip_scheme(target):
    """Returns the host of a gRPC target such as "dns:///host:port"."""
    if "///" in target:
        return target.split("///", 1)[1]
    return target


def now_timestamp():
    """Current UTC time truncated to the millisecond granularity cells use."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


@dataclass(frozen=True)
class Cell:
    column: str
    timestamp: datetime.datetime
    value: bytes


@dataclass
class Row:
    key: str
    families: Dict[str, List[Cell]] = field(default_factory=dict)

    def cells(self):
        for family, cells in self.families.items():
            for cell in cells:
                yield family, cell

    @classmethod
    def from_partial_row(cls, partial) -> "Row":
        families = {}
        for family, columns in partial.cells.items():
            cells = families.setdefault(family, [])
            for qualifier, versions in columns.items():
                column = qualifier.decode("utf-8") if isinstance(qualifier, bytes) else qualifier
                for version in versions:
                    cells.append(Cell(column, version.timestamp, version.value))
        return cls(key=partial.row_key.decode("utf-8"), families=families)


@dataclass(frozen=True)
class SetCell:
    family: str
    column: str
    value: bytes
    timestamp: datetime.datetime


@dataclass
class Mutation:
    operations: List[SetCell] = field(default_factory=list)

    def set(self, family, column, value, timestamp=None):
        if isinstance(value, str):
            value = value.encode("utf-8")
        self.operations.append(
            SetCell(family, column, value, timestamp or now_timestamp())
        )
        return self


def create_data_channel(target, service_config, credentials=None):
    """Dials the data plane with the given service config as the default.

    Service configs published by the resolver are ignored so that the
    configured load-balancing policy always applies.
    """
    if credentials is None:
        credentials, _ = google.auth.default(scopes=[DATA_SCOPE])
    options = [
        ("grpc.service_config", service_config.to_json()),
        ("grpc.service_config_disable_resolution", 1),
        ("grpc.max_send_message_length", MAX_MESSAGE_SIZE),
        ("grpc.max_receive_message_length", MAX_MESSAGE_SIZE),
    ]
    logging.info(f"Dialing data channel to {target}")
    return google.auth.transport.grpc.secure_authorized_channel(
        credentials,
        google.auth.transport.requests.Request(),
        target,
        options=options,
    )


class AdminSession:
    def __init__(self, project, instance, endpoint, credentials=None):
        self._client = bigtable.Client(
            project=project,
            credentials=credentials,
            admin=True,
            admin_client_options={"api_endpoint": strip_scheme(endpoint)},
        )
        self._instance = self._client.instance(instance)

    def table_exists(self, name) -> bool:
        table = self._instance.table(name)
        try:
            self._client.table_admin_client.get_table(request={"name": table.name})
        except (exceptions.GoogleAPICallError, grpc.RpcError) as e:
            if is_not_found(e):
                return False
            raise
        return True

    def create_table(self, name):
        self._instance.table(name).create()

    def create_column_family(self, table, family):
        self._instance.table(table).column_family(family).create()

    def delete_table(self, name):
        self._instance.table(name).delete()

    def close(self):
        self._client.table_admin_client.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class _RoutedClient(bigtable.Client):
    """Client whose data API runs over a caller-supplied channel."""

    def __init__(self, project, channel, host, credentials=None):
        super().__init__(project=project, credentials=credentials)
        transport = BigtableGrpcTransport(host=host, channel=channel)
        self._routed_data_client = BigtableClient(transport=transport)

    @property
    def table_data_client(self):
        return self._routed_data_client


class RowScan:
    """Lazy prefix scan. Every iteration issues a fresh read."""

    def __init__(self, table, key_prefix):
        self._table = table
        self._key_prefix = key_prefix

    def __iter__(self) -> Iterator[Row]:
        row_set = RowSet()
        row_set.add_row_range_with_prefix(self._key_prefix)
        for partial in self._table.read_rows(row_set=row_set):
            yield Row.from_partial_row(partial)


class DataSession:
    def __init__(self, project, instance, channel, host, app_profile=None, credentials=None):
        self._channel = channel
        self._client = _RoutedClient(project, channel, host, credentials=credentials)
        self._instance = self._client.instance(instance)
        self._app_profile = app_profile or None

    def _table(self, name):
        return self._instance.table(name, app_profile_id=self._app_profile)

    def apply_mutation(self, table, row_key, mutation: Mutation):
        row = self._table(table).direct_row(row_key)
        for op in mutation.operations:
            row.set_cell(op.family, op.column, op.value, timestamp=op.timestamp)
        status = row.commit()
        if status is not None and status.code != 0:
            raise MutationError(row_key, status.code, status.message)

    def read_row(self, table, row_key) -> Optional[Row]:
        partial = self._table(table).read_row(row_key)
        if partial is None:
            return None
        return Row.from_partial_row(partial)

    def scan_rows(self, table, key_prefix) -> RowScan:
        return RowScan(self._table(table), key_prefix)

    def close(self):
        self._channel.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def is_not_found(error):
    if isinstance(error, exceptions.NotFound):
        return True
    return isinstance(error, grpc.RpcError) and error.code() == grpc.StatusCode.NOT_FOUND


def is_already_exists(error):
    if isinstance(error, exceptions.AlreadyExists):
        return True
    return (
        isinstance(error, grpc.RpcError)
        and error.code() == grpc.StatusCode.ALREADY_EXISTS
    )
