"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


class ExecutionRecord(SQLModel, table=True):
    """One row per flow run (sandbox, live or durable)."""

    __tablename__ = "execution_records"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: Optional[str] = Field(default=None, index=True, max_length=255)
    flow_id: str = Field(index=True, max_length=255)
    status: str = Field(default="running", max_length=50)
    mode: str = Field(default="sandbox", max_length=20)
    input: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    logs: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    duration_ms: Optional[int] = Field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "flowId": self.flow_id,
            "status": self.status,
            "mode": self.mode,
            "input": self.input,
            "output": self.output,
            "logs": self.logs,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
        }
