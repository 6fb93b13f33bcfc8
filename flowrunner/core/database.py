"""Async execution-record store with SQLModel and SQLAlchemy 2.0."""

import logging
from datetime import datetime
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from flowrunner.core.config import Settings
from flowrunner.models.database import ExecutionRecord
from flowrunner.core.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    @property
    def is_ready(self) -> bool:
        return self.async_session is not None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            for name in ("sqlalchemy.engine", "sqlalchemy.dialects", "sqlalchemy.pool"):
                logging.getLogger(name).setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
            # SQLite uses a static/null pool; sizing only applies to server databases
            if not self.settings.database_url.startswith("sqlite"):
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Execution Records
    # ============================================================================

    async def save_execution_record(self, record_id: str, flow_id: str, status: str, mode: str,
                                    input: Dict[str, Any], output: Optional[Dict[str, Any]] = None,
                                    logs: Optional[List[Dict[str, Any]]] = None,
                                    workflow_id: Optional[str] = None, error: Optional[str] = None,
                                    started_at: Optional[datetime] = None,
                                    completed_at: Optional[datetime] = None,
                                    duration_ms: Optional[int] = None) -> bool:
        """Insert or replace one execution record. Never raises."""
        try:
            async with self.get_session() as session:
                record = ExecutionRecord(
                    id=record_id,
                    workflow_id=workflow_id,
                    flow_id=flow_id,
                    status=status,
                    mode=mode,
                    input=input,
                    output=output,
                    logs=logs or [],
                    error=error[:2000] if error else None,
                    completed_at=completed_at,
                    duration_ms=duration_ms,
                )
                if started_at is not None:
                    record.started_at = started_at
                await session.merge(record)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save execution record", record_id=record_id, flow_id=flow_id, error=str(e))
            return False

    async def get_execution_record(self, record_id: str) -> Optional[ExecutionRecord]:
        """Get an execution record by ID."""
        try:
            async with self.get_session() as session:
                stmt = select(ExecutionRecord).where(ExecutionRecord.id == record_id)
                result = await session.execute(stmt)
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get execution record", record_id=record_id, error=str(e))
            return None

    async def list_execution_records(self, flow_id: Optional[str] = None,
                                     limit: int = 100) -> List[ExecutionRecord]:
        """List recent execution records, newest first."""
        try:
            async with self.get_session() as session:
                stmt = select(ExecutionRecord)
                if flow_id:
                    stmt = stmt.where(ExecutionRecord.flow_id == flow_id)
                stmt = stmt.order_by(ExecutionRecord.started_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to list execution records", flow_id=flow_id, error=str(e))
            return []
