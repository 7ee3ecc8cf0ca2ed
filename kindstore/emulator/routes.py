"""REST routes mirroring the Datastore v1 RPC surface."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from kindstore.core.logging import get_logger
from kindstore.emulator.dependencies import get_store
from kindstore.emulator.store import EmulatorStore, invalid_argument
from kindstore.models.dto import (
    AggregationResult,
    AggregationResultBatch,
    AllocateIdsRequest,
    AllocateIdsResponse,
    BeginTransactionRequest,
    BeginTransactionResponse,
    CommitRequest,
    CommitResponse,
    LookupRequest,
    LookupResponse,
    MutationResult,
    PartitionId,
    RollbackRequest,
    RollbackResponse,
    RunAggregationQueryRequest,
    RunAggregationQueryResponse,
    RunQueryRequest,
    RunQueryResponse,
)

logger = get_logger(__name__)

router = APIRouter()

_RESPONSE_OPTIONS = {"response_model_exclude_unset": True, "response_model_by_alias": True}


def _check_routing(request: Request, database_id: str | None) -> None:
    """Named databases must be addressed with the routing header as well."""
    if database_id and not request.headers.get("x-goog-request-params"):
        raise invalid_argument("missing routing header for named database")


def _namespace(partition: PartitionId | None) -> str:
    return (partition.namespace_id or "") if partition else ""


@router.post("/projects/{project_id}:lookup", response_model=LookupResponse, **_RESPONSE_OPTIONS)
def lookup(
    project_id: str,
    payload: LookupRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> LookupResponse:
    _check_routing(request, payload.database_id)
    transaction = payload.read_options.transaction if payload.read_options else None
    found, missing = store.lookup(project_id, payload.database_id, payload.keys, transaction)
    return LookupResponse(found=found, missing=missing)


@router.post("/projects/{project_id}:commit", response_model=CommitResponse, **_RESPONSE_OPTIONS)
def commit(
    project_id: str,
    payload: CommitRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> CommitResponse:
    _check_routing(request, payload.database_id)
    results = store.commit(project_id, payload.database_id, payload.mode, payload.mutations, payload.transaction)
    logger.debug("commit applied", extra={"ctx_project": project_id, "ctx_count": len(results)})
    return CommitResponse(
        mutation_results=[MutationResult(**result) for result in results],
        index_updates=len(results),
    )


@router.post("/projects/{project_id}:runQuery", response_model=RunQueryResponse, **_RESPONSE_OPTIONS)
def run_query(
    project_id: str,
    payload: RunQueryRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> RunQueryResponse:
    _check_routing(request, payload.database_id)
    batch = store.run_query(project_id, payload.database_id, payload.query, _namespace(payload.partition_id))
    return RunQueryResponse(batch=batch)


@router.post(
    "/projects/{project_id}:runAggregationQuery",
    response_model=RunAggregationQueryResponse,
    **_RESPONSE_OPTIONS,
)
def run_aggregation_query(
    project_id: str,
    payload: RunAggregationQueryRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> RunAggregationQueryResponse:
    _check_routing(request, payload.database_id)
    aggregation = payload.aggregation_query
    nested = aggregation.get("nestedQuery")
    if not nested:
        raise invalid_argument("aggregation query requires a nestedQuery")
    namespace = _namespace(payload.partition_id)
    properties = {}
    for item in aggregation.get("aggregations") or []:
        if "count" not in item:
            raise invalid_argument("only count aggregations are supported")
        total = store.count(project_id, payload.database_id, nested, namespace)
        properties[item.get("alias") or "property_1"] = {"integerValue": str(total)}
    return RunAggregationQueryResponse(
        batch=AggregationResultBatch(
            aggregation_results=[AggregationResult(aggregate_properties=properties)],
            more_results="NO_MORE_RESULTS",
        )
    )


@router.post("/projects/{project_id}:allocateIds", response_model=AllocateIdsResponse, **_RESPONSE_OPTIONS)
def allocate_ids(
    project_id: str,
    payload: AllocateIdsRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> AllocateIdsResponse:
    _check_routing(request, payload.database_id)
    return AllocateIdsResponse(keys=store.allocate_ids(payload.keys))


@router.post(
    "/projects/{project_id}:beginTransaction",
    response_model=BeginTransactionResponse,
    **_RESPONSE_OPTIONS,
)
def begin_transaction(
    project_id: str,
    payload: BeginTransactionRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> BeginTransactionResponse:
    _check_routing(request, payload.database_id)
    return BeginTransactionResponse(transaction=store.begin_transaction(payload.transaction_options))


@router.post("/projects/{project_id}:rollback", response_model=RollbackResponse, **_RESPONSE_OPTIONS)
def rollback(
    project_id: str,
    payload: RollbackRequest,
    request: Request,
    store: EmulatorStore = Depends(get_store),
) -> RollbackResponse:
    _check_routing(request, payload.database_id)
    store.rollback(payload.transaction)
    return RollbackResponse()


__all__ = ["router"]
