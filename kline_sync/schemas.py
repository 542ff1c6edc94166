"""
Pydantic schemas for API request/response validation.
Times of klines and gaps travel as epoch milliseconds; requests also accept
ISO-8601 strings for range bounds.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standardized error payload for all API errors."""

    schema_version: str
    status: str = "error"
    error_code: str
    message: str

    class Config:
        json_schema_extra = {
            "example": {
                "schema_version": "1.0",
                "status": "error",
                "error_code": "validation_error",
                "message": "Unsupported interval: 2m",
            }
        }


class KlineSchema(BaseModel):
    symbol_id: int
    interval: str
    open_time_ms: int
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    close_price: Decimal
    volume: Decimal
    quote_volume: Decimal
    trade_count: int
    close_time_ms: int

    class Config:
        from_attributes = True


class KlineListResponse(BaseModel):
    schema_version: str
    symbol_id: int
    interval: str
    count: int
    klines: List[KlineSchema]


class KlineDeleteRequest(BaseModel):
    symbol_id: int
    interval: str
    start_time: Union[int, str]
    end_time: Union[int, str]


class GapSchema(BaseModel):
    id: int
    symbol_id: int
    interval: str
    gap_start_ms: int
    gap_end_ms: int
    missing_count: int
    status: str
    retry_count: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GapListResponse(BaseModel):
    schema_version: str
    total: int
    page: int
    page_size: int
    items: List[GapSchema]


class SeriesRequest(BaseModel):
    symbol_id: int
    interval: str


class GapDetectResponse(BaseModel):
    schema_version: str
    success: bool
    message: str
    symbol_count: int
    interval_count: int
    new_gap_count: int
    total_gap_count: int
    gaps: List[GapSchema] = Field(default_factory=list)


class GapFillResponse(BaseModel):
    schema_version: str
    success: bool
    gap_id: int
    synced_count: int
    message: str
    task_id: Optional[int] = None


class BatchGapFillRequest(BaseModel):
    gap_ids: List[int]


class BatchGapFillResponse(BaseModel):
    schema_version: str
    total: int
    success_count: int
    failure_count: int
    skipped_count: int
    total_synced: int
    disabled: bool
    message: str
    results: List[dict]
    skipped: List[str]


class HistorySyncRequest(BaseModel):
    symbol_id: int
    interval: str
    start_time: Union[int, str]
    end_time: Union[int, str]


class HistorySyncResponse(BaseModel):
    schema_version: str
    symbol_id: int
    interval: str
    synced_count: int


class IncrementalSyncResponse(BaseModel):
    schema_version: str
    total_symbols: int
    total_processed: int
    success_count: int
    failure_count: int
    total_klines: int
    results: List[dict]


class SyncStatusSchema(BaseModel):
    id: int
    symbol_id: int
    interval: str
    last_kline_time_ms: Optional[int] = None
    total_klines: int
    auto_gap_fill_enabled: bool
    last_sync_time: Optional[datetime] = None

    class Config:
        from_attributes = True


class AutoGapFillRequest(BaseModel):
    enabled: bool


class SyncTaskSchema(BaseModel):
    id: int
    symbol_id: int
    interval: str
    task_type: str
    status: str
    start_time_ms: Optional[int] = None
    end_time_ms: Optional[int] = None
    synced_count: int
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskListResponse(BaseModel):
    schema_version: str
    total: int
    page: int
    page_size: int
    items: List[SyncTaskSchema]


class SubscriptionSchema(BaseModel):
    key: str
    data_source_id: int
    symbol_id: int
    symbol: str
    interval: str
    connected: bool

    class Config:
        from_attributes = True


class RealtimeStatusResponse(BaseModel):
    schema_version: str
    enabled: bool
    subscription_count: int
    connected_count: int
    pending_backfills: int
    subscriptions: List[SubscriptionSchema]


class RealtimeReconnectRequest(BaseModel):
    data_source_id: int
    symbol_id: int
    interval: str


class ConfigSchema(BaseModel):
    config_key: str
    config_value: Optional[str] = None
    description: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConfigUpdateRequest(BaseModel):
    value: str
