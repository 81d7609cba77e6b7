from fastapi import APIRouter, HTTPException
from upsync.api.schemas import FullSyncRequest, QueueItemResponse, TokenUpdate, TransactionEdit
from upsync.observability.logger import get_logger

log = get_logger("api")

router = APIRouter(prefix="/api")


def get_app_state():
    """Get shared app state, set during startup."""
    from upsync.main import app_state
    return app_state


def _items(items) -> list[dict]:
    return [QueueItemResponse.model_validate(item).model_dump(mode="json") for item in items]


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/status")
async def get_status():
    state = get_app_state()
    usage = await state["budget"].usage_stats()
    return {
        "usage": usage.model_dump(mode="json"),
        "high_usage": await state["budget"].is_high_usage(),
        "sync": await state["progress"].snapshot(),
        "queue": await state["queue"].counts(),
        "jobs": state["scheduler"].status(),
    }


@router.get("/usage")
async def get_usage():
    state = get_app_state()
    usage = await state["budget"].usage_stats()
    return usage.model_dump(mode="json")


@router.get("/sync")
async def get_sync():
    state = get_app_state()
    return await state["progress"].snapshot()


@router.post("/sync/full", status_code=202)
async def trigger_full_sync(body: FullSyncRequest):
    state = get_app_state()
    result = await state["scheduler"].trigger_full_sync(body.time_range)
    if not result.accepted:
        raise HTTPException(status_code=409, detail="A full sync is already running")
    return result.to_dict()


@router.post("/jobs/{name}/run")
async def run_job(name: str):
    state = get_app_state()
    scheduler = state["scheduler"]
    if name not in scheduler.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    log.info("job_run_requested", job=name)
    result = await scheduler.run_job(name)
    return {"job": name, "result": result.to_dict() if hasattr(result, "to_dict") else result,
            **scheduler.jobs[name].status()}


@router.get("/queue")
async def get_queue(status: str | None = None, limit: int = 50):
    state = get_app_state()
    items = await state["queue"].list_items(status=status, limit=limit)
    return {"items": _items(items), "counts": await state["queue"].counts()}


@router.post("/queue/{item_id}/requeue")
async def requeue_item(item_id: int):
    state = get_app_state()
    try:
        item = await state["queue"].requeue(item_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return _items([item])[0]


@router.post("/queue/{item_id}/discard")
async def discard_item(item_id: int):
    state = get_app_state()
    try:
        item = await state["queue"].discard(item_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return _items([item])[0]


@router.patch("/transactions/{transaction_id}")
async def edit_transaction(transaction_id: int, body: TransactionEdit):
    state = get_app_state()
    # Only fields present in the body are edited; an explicit null clears the category
    changes = {key: getattr(body, key) for key in body.model_fields_set}
    if "tags" in changes and changes["tags"] is None:
        changes["tags"] = []
    queued = await state["store"].apply_local_edit(transaction_id, **changes)
    if queued is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"queued": _items(queued)}


@router.put("/token")
async def update_token(body: TokenUpdate):
    state = get_app_state()
    if not body.token.strip():
        raise HTTPException(status_code=422, detail="Token must not be empty")
    await state["tokens"].store_token(body.token)
    return {"ok": True}
