"""Public, stable API surface for skuid-sync.

If you're scripting retrieves/deploys or embedding the sync engine in your
own tooling, import from **`skuid.sync.api`**.

Everything outside this package is considered internal and may change without
notice, even in minor releases.
"""

from __future__ import annotations

# Archives
from skuid.sync.archive import pack, unpack, unpack_concatenated
# Metadata catalog
from skuid.sync.catalog import MetadataKind, all_kinds, classify, directory_names, entity_name
# Cancellation
from skuid.sync.context import CancelToken
# Common exceptions
from skuid.sync.exception import (
    ArgumentError,
    AuthError,
    DeployInterrupted,
    LocalIOError,
    PayloadError,
    PlanError,
    ServerError,
    ShardError,
    TransportError,
    UnsafePathError,
)
# Shard execution
from skuid.sync.executor import ExecutionResult, execute_deploy_plan, execute_retrieval
# Merge
from skuid.sync.merge import canonical_json, deep_merge, write_results_to_disk
# Payload models
from skuid.sync.models import ArchiveEntry, AuthToken, DeployShardResult, PlanFilter, PlanShard
# Plans
from skuid.sync.plan import get_retrieve_plan, prepare_deployment
# Settings
from skuid.sync.runtime.settings import Settings, load_settings
# Session
from skuid.sync.session import HTTPSession
# Use cases
from skuid.sync.sync import OperationResult, deploy, exit_code_for, retrieve, watch

__all__ = [
    # archives
    "pack",
    "unpack",
    "unpack_concatenated",
    "ArchiveEntry",
    # catalog
    "MetadataKind",
    "all_kinds",
    "directory_names",
    "classify",
    "entity_name",
    # session + plans
    "HTTPSession",
    "AuthToken",
    "PlanFilter",
    "PlanShard",
    "get_retrieve_plan",
    "prepare_deployment",
    # execution
    "ExecutionResult",
    "DeployShardResult",
    "execute_retrieval",
    "execute_deploy_plan",
    "CancelToken",
    # merge
    "deep_merge",
    "canonical_json",
    "write_results_to_disk",
    # settings
    "Settings",
    "load_settings",
    # use cases
    "OperationResult",
    "retrieve",
    "deploy",
    "watch",
    "exit_code_for",
    # exceptions
    "ArgumentError",
    "AuthError",
    "TransportError",
    "ServerError",
    "PayloadError",
    "UnsafePathError",
    "LocalIOError",
    "PlanError",
    "ShardError",
    "DeployInterrupted",
]
