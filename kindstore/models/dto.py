"""Pydantic DTOs for the REST request and response bodies."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MoreResults = Literal[
    "MORE_RESULTS_TYPE_UNSPECIFIED",
    "NOT_FINISHED",
    "MORE_RESULTS_AFTER_LIMIT",
    "MORE_RESULTS_AFTER_CURSOR",
    "NO_MORE_RESULTS",
]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# Responses ---------------------------------------------------------------


class EntityResult(WireModel):
    entity: dict[str, Any] = Field(default_factory=dict, description="Entity wire document")
    cursor: str | None = None
    version: str | None = None


class LookupResponse(WireModel):
    found: list[EntityResult] = Field(default_factory=list)
    missing: list[EntityResult] = Field(default_factory=list)
    deferred: list[dict[str, Any]] = Field(default_factory=list, description="Keys to look up again")


class QueryResultBatch(WireModel):
    entity_result_type: str | None = None
    entity_results: list[EntityResult] = Field(default_factory=list)
    end_cursor: str | None = None
    more_results: MoreResults = "MORE_RESULTS_TYPE_UNSPECIFIED"
    skipped_results: int | None = None


class RunQueryResponse(WireModel):
    batch: QueryResultBatch = Field(default_factory=QueryResultBatch)


class AggregationResult(WireModel):
    aggregate_properties: dict[str, dict[str, Any]] = Field(default_factory=dict)


class AggregationResultBatch(WireModel):
    aggregation_results: list[AggregationResult] = Field(default_factory=list)
    more_results: MoreResults = "MORE_RESULTS_TYPE_UNSPECIFIED"


class RunAggregationQueryResponse(WireModel):
    batch: AggregationResultBatch = Field(default_factory=AggregationResultBatch)


class MutationResult(WireModel):
    key: dict[str, Any] | None = None
    version: str | None = None


class CommitResponse(WireModel):
    mutation_results: list[MutationResult] = Field(default_factory=list)
    index_updates: int | None = None


class AllocateIdsResponse(WireModel):
    keys: list[dict[str, Any]] = Field(default_factory=list)


class BeginTransactionResponse(WireModel):
    transaction: str


class RollbackResponse(WireModel):
    pass


# Requests (parsed by the emulator) -----------------------------------------


class PartitionId(WireModel):
    project_id: str | None = None
    database_id: str | None = None
    namespace_id: str | None = None


class ReadOptions(WireModel):
    transaction: str | None = None
    read_consistency: str | None = None
    read_time: str | None = None


class LookupRequest(WireModel):
    database_id: str | None = None
    keys: list[dict[str, Any]] = Field(default_factory=list)
    read_options: ReadOptions | None = None


class RunQueryRequest(WireModel):
    database_id: str | None = None
    partition_id: PartitionId | None = None
    read_options: ReadOptions | None = None
    query: dict[str, Any] = Field(default_factory=dict, description="Structured query document")


class RunAggregationQueryRequest(WireModel):
    database_id: str | None = None
    partition_id: PartitionId | None = None
    read_options: ReadOptions | None = None
    aggregation_query: dict[str, Any] = Field(default_factory=dict)


class CommitRequest(WireModel):
    database_id: str | None = None
    mode: Literal["MODE_UNSPECIFIED", "TRANSACTIONAL", "NON_TRANSACTIONAL"] = "MODE_UNSPECIFIED"
    transaction: str | None = None
    mutations: list[dict[str, Any]] = Field(default_factory=list)


class AllocateIdsRequest(WireModel):
    database_id: str | None = None
    keys: list[dict[str, Any]] = Field(default_factory=list)


class BeginTransactionRequest(WireModel):
    database_id: str | None = None
    transaction_options: dict[str, Any] | None = None


class RollbackRequest(WireModel):
    database_id: str | None = None
    transaction: str


__all__ = [
    "AggregationResult",
    "AggregationResultBatch",
    "AllocateIdsRequest",
    "AllocateIdsResponse",
    "BeginTransactionRequest",
    "BeginTransactionResponse",
    "CommitRequest",
    "CommitResponse",
    "EntityResult",
    "LookupRequest",
    "LookupResponse",
    "MutationResult",
    "PartitionId",
    "QueryResultBatch",
    "ReadOptions",
    "RollbackRequest",
    "RollbackResponse",
    "RunAggregationQueryRequest",
    "RunAggregationQueryResponse",
    "RunQueryRequest",
    "RunQueryResponse",
]
