from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from apps.backend.services.container import EngineContainer, get_container
from apps.backend.services.pos.connectors import SIGNATURE_HEADERS


router = APIRouter(prefix="/pos/webhooks", tags=["webhooks"])


@router.post("/{provider}/{venue_id}")
async def receive_webhook(
    provider: str,
    venue_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    container: EngineContainer = Depends(get_container),
):
    """
    Signature-verified, no auth. Events are queued and drained in the
    background; a redelivery is a ledger no-op.
    """
    body = await request.body()
    header = SIGNATURE_HEADERS.get(provider.upper(), "")
    signature = request.headers.get(header) if header else None

    result = await container.orchestrator.ingest_webhook(venue_id, provider, body, signature, str(request.url))
    if result.get("status") == "queued" and result.get("events"):
        background_tasks.add_task(container.orchestrator.process_webhook_queue, venue_id, provider.upper())
    return JSONResponse(status_code=200, content=result)
