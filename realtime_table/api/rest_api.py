"""
rest_api.py - HTTP and WebSocket surface of a table backend

Serves the backend-as-a-service contract the client consumes: declarative
reads, point writes and a per-table change stream over WebSocket.
"""
import asyncio
import logging
from typing import Dict, Any, List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from realtime_table.backends.base import TableBackend
from realtime_table.cdc.change_feed import Subscription
from realtime_table.config import RealtimeTableConfig, get_config
from realtime_table.errors import (
    AuthError, NetworkError, NotFoundError, RealtimeTableError, SubscriptionLostError,
    ValidationError, classify_error,
)
from realtime_table.types.query_descriptor import QueryDescriptor
from realtime_table.types.records import validate_payload

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses
class OrderByModel(BaseModel):
    column: str
    ascending: bool = False


class FilterModel(BaseModel):
    column: str
    op: str = "eq"
    value: Any = None


class QueryRequest(BaseModel):
    """Pydantic model for a table read"""
    select: Union[str, List[str]] = "*"
    order_by: Optional[OrderByModel] = None
    filters: List[FilterModel] = []
    limit: Optional[int] = None


class WriteRequest(BaseModel):
    """Pydantic model for insert and update payloads"""
    values: Dict[str, Any]


class APIResponse(BaseModel):
    """Base API response model"""
    status: str
    data: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    AuthError: 403,
    NetworkError: 503,
    SubscriptionLostError: 503,
}


def to_http_error(exc: Exception) -> HTTPException:
    err = classify_error(exc)
    return HTTPException(status_code=STATUS_CODES.get(type(err), 500), detail=str(err))


async def _watch_disconnect(websocket: WebSocket, subscription: Subscription):
    # Inbound messages are ignored; a client hang-up ends the subscription
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change stream client for %s disconnected", subscription.table)
    finally:
        subscription.unsubscribe()


class RealtimeTableAPI:
    """REST + WebSocket API over a TableBackend"""

    def __init__(self, backend: TableBackend):
        self.backend = backend
        self.app = FastAPI(title="Realtime Table API")
        self._setup_routes()
        self._setup_websocket_routes()

    def _setup_routes(self):
        """Setup all API routes"""

        @self.app.get("/health")
        async def health_check():
            return {"status": "healthy", "service": "realtime-table", "version": "1.0"}

        @self.app.get("/tables")
        async def list_tables():
            return APIResponse(status="success", data=sorted(self.backend.list_tables()))

        @self.app.post("/tables/{table}/query")
        async def query_endpoint(table: str, request: QueryRequest):
            try:
                descriptor = QueryDescriptor.from_dict(request.model_dump())
                rows = await self.backend.select(table, descriptor)
            except RealtimeTableError as e:
                raise to_http_error(e)
            return APIResponse(
                status="success",
                data=jsonable_encoder(rows),
                metadata={"table": table, "count": len(rows), "query": descriptor.describe()}
            )

        @self.app.post("/tables/{table}/rows", status_code=201)
        async def insert_endpoint(table: str, request: WriteRequest):
            try:
                row = await self.backend.insert(table, validate_payload(table, request.values))
            except RealtimeTableError as e:
                raise to_http_error(e)
            return APIResponse(status="success", data=jsonable_encoder(row))

        @self.app.patch("/tables/{table}/rows/{row_id}")
        async def update_endpoint(table: str, row_id: str, request: WriteRequest):
            try:
                values = validate_payload(table, request.values, partial=True, row_id=row_id)
                row = await self.backend.update(table, row_id, values)
            except RealtimeTableError as e:
                raise to_http_error(e)
            return APIResponse(status="success", data=jsonable_encoder(row))

        @self.app.delete("/tables/{table}/rows/{row_id}")
        async def delete_endpoint(table: str, row_id: str):
            try:
                await self.backend.delete(table, row_id)
            except RealtimeTableError as e:
                raise to_http_error(e)
            return APIResponse(status="success", data={"id": row_id})

    def _setup_websocket_routes(self):
        """Setup the change stream route"""

        @self.app.websocket("/ws/tables/{table}")
        async def change_stream_endpoint(websocket: WebSocket, table: str):
            if table not in self.backend.list_tables():
                await websocket.close(code=4404)
                return
            await websocket.accept()
            subscription = await self.backend.subscribe(table)
            watcher = asyncio.create_task(_watch_disconnect(websocket, subscription))
            await websocket.send_json({"type": "subscription_ack", "table": table, "status": "subscribed"})
            try:
                async for event in subscription:
                    await websocket.send_json(jsonable_encoder(event.to_payload()))
                if not watcher.done():
                    await websocket.close()
            except SubscriptionLostError as e:
                logger.warning("Change stream for %s lost while serving a socket: %s", table, e)
                await websocket.close(code=1011)
            except WebSocketDisconnect:
                logger.debug("Change stream client for %s disconnected", table)
            finally:
                watcher.cancel()
                subscription.unsubscribe()

    def get_app(self) -> FastAPI:
        """Get the FastAPI application instance"""
        return self.app


def create_api(config: Optional[RealtimeTableConfig] = None,
               backend: Optional[TableBackend] = None) -> RealtimeTableAPI:
    """Create the API with a backend built from configuration"""
    if backend is None:
        from realtime_table.client import create_backend
        backend = create_backend(config or get_config())
    return RealtimeTableAPI(backend)
