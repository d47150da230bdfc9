"""
Delivery verification and verification-cache endpoints.
"""
import asyncio
import time
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from bl_reconciliation.api.deps import (
    get_cache,
    get_config_provider,
    get_delivery_store,
    get_orchestrator,
    get_record_client,
    get_request_id,
)
from bl_reconciliation.config import BULK_VERIFICATION
from bl_reconciliation.models.schemas.verification import (
    BulkVerificationItemOut,
    BulkVerificationRequest,
    CacheCleanupOut,
    CacheStatsOut,
    ConnectionCheckOut,
    DeliveryVerificationOut,
    VerificationResultOut,
)
from bl_reconciliation.models.verification import StoreConfigError, VerificationKey
from bl_reconciliation.services.bulk_verifier import BulkVerificationOrchestrator
from bl_reconciliation.services.external_records import ExternalRecordClient
from bl_reconciliation.services.stores import DeliveryStore, StoreConfigProvider
from bl_reconciliation.services.verification_cache import VerificationCache
from bl_reconciliation.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/bulk",
    response_model=List[BulkVerificationItemOut],
    summary="Verify a batch of deliveries"
)
async def verify_bulk(
    payload: BulkVerificationRequest,
    orchestrator: BulkVerificationOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
) -> List[BulkVerificationItemOut]:
    """Verify each delivery against its store's invoice table (cache first).

    The response has one entry per submitted delivery, in submission order.
    """
    max_batch = int(BULK_VERIFICATION["max_batch_size"])
    if len(payload.deliveries) > max_batch:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {max_batch} deliveries per request"
        )
    start_time = time.time()
    items = await orchestrator.verify_bulk([d.to_snapshot() for d in payload.deliveries])
    log_performance(
        "bulk_verification",
        (time.time() - start_time) * 1000,
        {"count": len(items), "cache_hits": sum(1 for i in items if i.cache_hit), "request_id": request_id},
    )
    return [BulkVerificationItemOut.from_item(i) for i in items]


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryVerificationOut,
    summary="Cached verification for one delivery"
)
async def get_delivery_verification(
    delivery_id: int,
    deliveries: DeliveryStore = Depends(get_delivery_store),
    orchestrator: BulkVerificationOrchestrator = Depends(get_orchestrator),
) -> DeliveryVerificationOut:
    """Return the cached result, verifying the stored delivery afresh when nothing valid is cached."""
    snapshot = await asyncio.to_thread(deliveries.get, delivery_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Delivery {delivery_id} not found")
    item = await orchestrator.verify(snapshot)
    return DeliveryVerificationOut(
        delivery_id=item.delivery_id,
        store_id=item.store_id,
        cache_hit=item.cache_hit,
        result=VerificationResultOut.from_result(item.result),
    )


@router.get(
    "/cache/stats",
    response_model=CacheStatsOut,
    summary="Verification cache statistics"
)
async def cache_stats(
    store_id: Optional[int] = Query(None, alias="storeId"),
    cache: VerificationCache = Depends(get_cache),
) -> CacheStatsOut:
    return CacheStatsOut.from_stats(cache.stats(store_id), store_id)


@router.delete(
    "/cache",
    response_model=CacheCleanupOut,
    summary="Remove expired cache entries and reset hit counters"
)
async def cache_cleanup(
    store_id: Optional[int] = Query(None, alias="storeId"),
    cache: VerificationCache = Depends(get_cache),
    request_id: str = Depends(get_request_id),
) -> CacheCleanupOut:
    cleaned = cache.cleanup(store_id)
    logger.info("Verification cache cleanup requested", store_id=store_id, cleaned_count=cleaned, request_id=request_id)
    return CacheCleanupOut(store_id=store_id, cleaned_count=cleaned)


@router.delete(
    "/cache/{store_id}/{delivery_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Invalidate one cached verification"
)
async def cache_invalidate(
    store_id: int,
    delivery_id: int,
    cache: VerificationCache = Depends(get_cache),
) -> None:
    if not cache.invalidate(VerificationKey(delivery_id=delivery_id, store_id=store_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No cached verification for this delivery")


@router.post(
    "/stores/{store_id}/test-connection",
    response_model=ConnectionCheckOut,
    summary="Check a store's external invoice table connection"
)
async def test_store_connection(
    store_id: int,
    configs: StoreConfigProvider = Depends(get_config_provider),
    client: ExternalRecordClient = Depends(get_record_client),
) -> ConnectionCheckOut:
    config = configs.get_config(store_id)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Store {store_id} has no reconciliation config")
    try:
        config.require_complete()
    except StoreConfigError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    outcome = await client.check_connection(config)
    return ConnectionCheckOut(
        store_id=store_id,
        success=outcome.success,
        record_count=len(outcome.records),
        error_code=outcome.error_code,
        error_message=outcome.error_message,
        status_code=outcome.status_code,
    )
