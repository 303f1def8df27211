"""
Partition Lifecycle Engine.

Wires the catalog, the database gateway and the lock provider into the
component services and exposes every engine operation in one place. The
CLI, the scheduler, the premake listener and the HTTP API all go through
this class.
"""
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.modules.partitioning.domain.boundaries import BoundaryCalculator
from partsmith.modules.partitioning.domain.catalog import PartitionCatalog
from partsmith.modules.partitioning.domain.constraints import ConstraintApplier
from partsmith.modules.partitioning.domain.gateway import PostgresPartitionGateway
from partsmith.modules.partitioning.domain.lineage import Lineage
from partsmith.modules.partitioning.domain.maintenance import MaintenanceOrchestrator
from partsmith.modules.partitioning.domain.materializer import TableMaterializer
from partsmith.modules.partitioning.domain.migrator import DataMigrator
from partsmith.modules.partitioning.domain.partition_sets import PartitionSetService
from partsmith.modules.partitioning.domain.results import MaintenanceResult, OperationResult
from partsmith.modules.partitioning.domain.retention import RetentionReaper
from partsmith.modules.partitioning.domain.router import RouterSynthesizer
from partsmith.modules.partitioning.domain.types import (
    Bound,
    ChildTableDescriptor,
    MigrationOrder,
    PartitionMode,
    PartitionSetConfig,
    PartitionSetInfo,
    RetentionMode,
    SubPartitionTemplate,
)
from partsmith.modules.partitioning.domain.undo import UndoEngine
from partsmith.shared.core.config import Settings, get_settings
from partsmith.shared.core.locks import LockProvider, build_lock_provider


class PartitionEngine:
    def __init__(
        self,
        catalog,
        gateway,
        locks: LockProvider,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        savepoint: Optional[Callable[[], AsyncContextManager]] = None,
        max_depth: int = 16,
        notify_channel: Optional[str] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.locks = locks
        self.calculator = BoundaryCalculator(catalog, clock=clock)
        self.lineage = Lineage(gateway, catalog, max_depth=max_depth)
        self.materializer = TableMaterializer(catalog, gateway, self.calculator, self.lineage)
        self.router = RouterSynthesizer(catalog, gateway, self.calculator, notify_channel)
        self.constraints = ConstraintApplier(gateway, self.calculator)
        self.partition_sets = PartitionSetService(
            catalog,
            gateway,
            self.calculator,
            self.lineage,
            self.materializer,
            self.router,
            self.constraints,
        )
        self.materializer.set_creator = self.partition_sets.create_parent
        self.reaper = RetentionReaper(catalog, gateway, self.calculator, self.lineage, locks)
        self.maintenance = MaintenanceOrchestrator(
            catalog,
            gateway,
            self.calculator,
            self.materializer,
            self.router,
            self.constraints,
            self.partition_sets,
            self.reaper,
            locks,
            savepoint=savepoint,
        )
        self.migrator = DataMigrator(
            catalog, gateway, self.calculator, self.materializer, self.router
        )
        self.undo_engine = UndoEngine(catalog, gateway, self.calculator, self.router, locks)

    @classmethod
    def for_session(
        cls,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "PartitionEngine":
        settings = settings or get_settings()
        return cls(
            PartitionCatalog(db),
            PostgresPartitionGateway(db),
            build_lock_provider(db, settings),
            clock=clock,
            savepoint=db.begin_nested,
            max_depth=settings.MAX_INHERITANCE_DEPTH,
            notify_channel=settings.PREMAKE_NOTIFY_CHANNEL,
        )

    # --- Partition sets ---

    async def create_parent(
        self,
        parent_table: str,
        control: str,
        mode: Union[str, PartitionMode],
        interval: Union[str, int],
        premake: int = 4,
        **options: Any,
    ) -> OperationResult:
        if "constraint_cols" in options:
            options["constraint_cols"] = tuple(options["constraint_cols"] or ())
        config = PartitionSetConfig(
            parent_table=parent_table,
            mode=PartitionMode.parse(mode),
            control=control,
            interval=str(interval),
            premake=premake,
            **options,
        )
        return await self.partition_sets.create_parent(config)

    async def create_sub_parent(self, template: SubPartitionTemplate) -> OperationResult:
        return await self.partition_sets.create_sub_parent(template)

    async def list_configs(self) -> list[PartitionSetConfig]:
        return await self.catalog.list_configs()

    async def set_retention(
        self,
        parent_table: str,
        retention: str,
        mode: Optional[RetentionMode] = None,
        retention_schema: Optional[str] = None,
    ) -> PartitionSetConfig:
        return await self.partition_sets.set_retention(parent_table, retention, mode, retention_schema)

    async def remove_retention(self, parent_table: str) -> PartitionSetConfig:
        return await self.partition_sets.remove_retention(parent_table)

    async def info(self, parent_table: str) -> PartitionSetInfo:
        return await self.partition_sets.info(parent_table)

    async def list_children(
        self, parent_table: str, order: MigrationOrder = MigrationOrder.ASCENDING
    ) -> list[ChildTableDescriptor]:
        return await self.partition_sets.list_children(parent_table, order)

    async def check_parents(self) -> dict[str, int]:
        return await self.partition_sets.check_parents()

    async def reapply_privileges(self, parent_table: str) -> int:
        return await self.partition_sets.reapply_privileges(parent_table)

    async def apply_constraints(self, parent_table: str) -> bool:
        return await self.partition_sets.apply_constraints(parent_table)

    async def on_demand_premake(self, parent_table: str, value: Bound) -> OperationResult:
        return await self.partition_sets.on_demand_premake(parent_table, value)

    # --- Lifecycle ---

    async def run_maintenance(self, parent_table: Optional[str] = None) -> MaintenanceResult:
        return await self.maintenance.run(parent_table)

    async def drop_eligible(
        self,
        parent_table: str,
        retention: Optional[str] = None,
        mode: Optional[RetentionMode] = None,
        retention_schema: Optional[str] = None,
    ) -> OperationResult:
        return await self.reaper.drop_eligible(parent_table, retention, mode, retention_schema)

    async def migrate(
        self,
        parent_table: str,
        batch_count: int = 1,
        batch_interval: Optional[Union[str, int]] = None,
        lock_wait_seconds: float = 0,
        order: MigrationOrder = MigrationOrder.ASCENDING,
    ) -> OperationResult:
        return await self.migrator.migrate(
            parent_table, batch_count, batch_interval, lock_wait_seconds, order
        )

    async def undo(
        self,
        parent_table: str,
        batch_count: int = 1,
        keep_table: bool = True,
        lock_wait_seconds: float = 0,
    ) -> OperationResult:
        return await self.undo_engine.undo(parent_table, batch_count, keep_table, lock_wait_seconds)
