"""
Records returned by the remote service.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field, field_validator, model_validator

from .base import BaseModel


class CommittedRecord(BaseModel):
    """Canonical record acknowledged by the remote commit API."""
    id: str = Field(..., min_length=1, description="Server-assigned identity")
    kind: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def split_identity(cls, values: Any) -> Any:
        """Accept a flat record ({"id": ..., "amount": ...}) as well as {id, data}."""
        if isinstance(values, dict) and "data" not in values:
            identity = values.get("id", values.get("_id"))
            rest = {k: v for k, v in values.items() if k not in ("id", "_id", "kind")}
            return {"id": identity, "kind": values.get("kind"), "data": rest}
        return values

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v


class DashboardSummary(BaseModel):
    """Headline figures shown on the dashboard. Plain numeric aggregates."""
    total_profit: float = Field(default=0.0, alias="totalBusinessProfit")
    vehicle_earnings: float = Field(default=0.0, alias="totalVehicleProfit")
    scrap_trading: float = Field(default=0.0, alias="scrapProfit")
    bills_generated: int = Field(default=0, alias="billsGenerated")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")

    @field_validator("total_profit", "vehicle_earnings", "scrap_trading", "bills_generated", mode="before")
    @classmethod
    def none_as_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    def with_deltas(self, vehicle: float = 0.0, scrap: float = 0.0, bills: int = 0) -> 'DashboardSummary':
        """Summary with pending local changes added on top."""
        vehicle_earnings = self.vehicle_earnings + vehicle
        scrap_trading = self.scrap_trading + scrap
        return self.model_copy(update={
            "vehicle_earnings": vehicle_earnings,
            "scrap_trading": scrap_trading,
            "total_profit": self.total_profit + vehicle + scrap,
            "bills_generated": self.bills_generated + bills,
        })
