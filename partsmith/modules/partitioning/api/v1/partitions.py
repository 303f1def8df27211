"""
Partition Sets API

Provides endpoints for:
- Listing configured partition sets and their maintenance schedule
- Inspecting a set and its children
- Running maintenance for one set on demand
"""
import secrets
from datetime import datetime
from typing import Annotated, Any, List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.modules.partitioning.domain.engine import PartitionEngine
from partsmith.modules.partitioning.domain.types import MigrationOrder, PartitionSetConfig
from partsmith.modules.partitioning.scheduler import schedule_class
from partsmith.shared.core.config import get_settings
from partsmith.shared.db.session import get_db

router = APIRouter(tags=["Partition Sets"])
logger = structlog.get_logger()


async def require_api_key(
    authorization: Annotated[Optional[str], Header()] = None,
    api_key: Annotated[Optional[str], Query(description="API key, if no Authorization header is sent")] = None,
) -> None:
    """Accept `Authorization: Bearer <key>` or `?api_key=<key>` matching one of API_KEYS."""
    accepted = get_settings().api_keys
    if not accepted:
        raise HTTPException(status_code=503, detail="API_KEYS is not configured.")
    presented = api_key
    if authorization and authorization.lower().startswith("bearer "):
        presented = authorization[7:].strip()
    if not presented or not any(secrets.compare_digest(presented, key) for key in accepted):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_partition_engine(db: AsyncSession = Depends(get_db)) -> PartitionEngine:
    return PartitionEngine.for_session(db)


EngineDep = Annotated[PartitionEngine, Depends(get_partition_engine)]


class PartitionSetResponse(BaseModel):
    parent_table: str
    mode: str
    control: str
    interval: str
    premake: int
    retention: Optional[str] = None
    retention_mode: str
    retention_schema: Optional[str] = None
    constraint_cols: List[str] = []
    inherit_fk: bool
    use_scheduled_maintenance: bool
    undo_in_progress: bool

    @classmethod
    def from_config(cls, config: PartitionSetConfig) -> "PartitionSetResponse":
        return cls(
            parent_table=config.parent_table,
            mode=config.mode.value,
            control=config.control,
            interval=config.interval,
            premake=config.premake,
            retention=config.retention,
            retention_mode=config.retention_mode.value,
            retention_schema=config.retention_schema,
            constraint_cols=list(config.constraint_cols),
            inherit_fk=config.inherit_fk,
            use_scheduled_maintenance=config.use_scheduled_maintenance,
            undo_in_progress=config.undo_in_progress,
        )


class ChildTableResponse(BaseModel):
    table: str
    lower: Optional[Union[datetime, int]] = None
    upper: Optional[Union[datetime, int]] = None
    rows: int
    bytes_on_disk: int


class PartitionInfoResponse(BaseModel):
    config: PartitionSetResponse
    sub_partition: Optional[dict[str, Any]] = None
    children: int
    total_rows: int
    total_bytes: int
    parent_rows: int
    newest_child: Optional[str] = None
    oldest_child: Optional[str] = None


@router.get("/partitions", response_model=List[PartitionSetResponse], dependencies=[Depends(require_api_key)])
async def list_partition_sets(engine: EngineDep) -> List[PartitionSetResponse]:
    return [PartitionSetResponse.from_config(config) for config in await engine.list_configs()]


@router.get("/partitions/schedule", dependencies=[Depends(require_api_key)])
async def partition_schedule(engine: EngineDep) -> dict[str, str]:
    """Interval class (cron job) that maintains each scheduled set."""
    return {
        config.parent_table: schedule_class(config)
        for config in await engine.list_configs()
        if config.use_scheduled_maintenance
    }


@router.get(
    "/partitions/{parent_table}",
    response_model=PartitionInfoResponse,
    dependencies=[Depends(require_api_key)],
)
async def partition_set_info(parent_table: str, engine: EngineDep) -> PartitionInfoResponse:
    info = await engine.info(parent_table)
    template = info.sub_template
    return PartitionInfoResponse(
        config=PartitionSetResponse.from_config(info.config),
        sub_partition=(
            {
                "mode": template.mode.value,
                "control": template.control,
                "interval": template.interval,
                "premake": template.premake,
                "retention": template.retention,
            }
            if template is not None
            else None
        ),
        children=info.children,
        total_rows=info.total_rows,
        total_bytes=info.total_bytes,
        parent_rows=info.parent_rows,
        newest_child=info.newest_child,
        oldest_child=info.oldest_child,
    )


@router.get(
    "/partitions/{parent_table}/children",
    response_model=List[ChildTableResponse],
    dependencies=[Depends(require_api_key)],
)
async def partition_children(
    parent_table: str,
    engine: EngineDep,
    order: MigrationOrder = Query(default=MigrationOrder.ASCENDING),
) -> List[ChildTableResponse]:
    return [
        ChildTableResponse(
            table=child.table,
            lower=child.lower,
            upper=child.upper,
            rows=child.rows,
            bytes_on_disk=child.bytes_on_disk,
        )
        for child in await engine.list_children(parent_table, order)
    ]


@router.post("/partitions/{parent_table}/maintenance", dependencies=[Depends(require_api_key)])
async def run_partition_maintenance(parent_table: str, engine: EngineDep) -> dict[str, Any]:
    result = await engine.run_maintenance(parent_table)
    logger.info(
        "api_maintenance_requested",
        parent_table=parent_table,
        status=result.status.value,
        created=result.created,
    )
    return result.as_dict()
