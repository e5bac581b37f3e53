# dashcore/api/records.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from dashcore.api.deps import current_user, get_generator, get_store
from dashcore.errors import DashboardError
from dashcore.infra.store import StoreAdapter
from dashcore.models.identity import CurrentUser
from dashcore.services.notification_generator import NotificationGenerator
from dashcore.services.repository import Repository
from dashcore.services.subjects import COMPLAINTS, EMPLOYEES, SALES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/records", tags=["records"])

COLLECTIONS = (SALES, COMPLAINTS, EMPLOYEES)
RESERVED_PARAMS = ("order_by", "direction", "limit")


def record_repository(
    collection: str,
    user: CurrentUser = Depends(current_user),
    store: StoreAdapter = Depends(get_store),
) -> Repository:
    if collection not in COLLECTIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown collection")
    return Repository(store, collection, user)


def _query_value(raw: str) -> Any:
    # query strings are untyped; booleans are the only filter values that need help
    if raw == "true":
        return True
    if raw == "false":
        return False
    return raw


@router.get("/{collection}")
async def list_records(
    request: Request,
    order_by: str = "createdAt",
    direction: str = "desc",
    limit: Optional[int] = None,
    repository: Repository = Depends(record_repository),
):
    """
    Lists records; any other query parameter is an equality filter,
    e.g. /records/sales?paymentStatus=emi&customerId=c1
    """
    filters = [
        (name, _query_value(value))
        for name, value in request.query_params.multi_items()
        if name not in RESERVED_PARAMS
    ]
    docs = await repository.load(filters, order_by=order_by, direction=direction, limit=limit)
    return [doc.to_dict() for doc in docs]


async def _reconcile(generator: NotificationGenerator, user: CurrentUser, collection: str, record_id: str):
    # the write already happened; stale notifications are fixed by the next generation run
    try:
        await generator.reconcile_record(user.scope, user.id, collection, record_id)
    except DashboardError as e:
        logger.warning("Could not refresh notifications for %s %s: %s", collection, record_id, e)


@router.post("/{collection}", status_code=status.HTTP_201_CREATED)
async def create_record(
    collection: str,
    data: Dict[str, Any] = Body(...),
    id: Optional[str] = None,
    repository: Repository = Depends(record_repository),
    generator: NotificationGenerator = Depends(get_generator),
):
    doc = await repository.add(data, id)
    await _reconcile(generator, repository.user, collection, doc.id)
    return doc.to_dict()


@router.get("/{collection}/{record_id}")
async def get_record(record_id: str, repository: Repository = Depends(record_repository)):
    return (await repository.get_by_id(record_id)).to_dict()


@router.patch("/{collection}/{record_id}")
async def update_record(
    collection: str,
    record_id: str,
    data: Dict[str, Any] = Body(...),
    repository: Repository = Depends(record_repository),
    generator: NotificationGenerator = Depends(get_generator),
):
    doc = await repository.update(record_id, data)
    await _reconcile(generator, repository.user, collection, record_id)
    return doc.to_dict()


@router.delete("/{collection}/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(
    collection: str,
    record_id: str,
    repository: Repository = Depends(record_repository),
    generator: NotificationGenerator = Depends(get_generator),
):
    await repository.remove(record_id)
    await _reconcile(generator, repository.user, collection, record_id)
