"""Read and export stored sensor telemetry."""
import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Query as OrmQuery, Session

from admin_auth import get_current_user
from database import get_db
from models import MilesightDeviceCache, MilesightDeviceTelemetry, User
from telemetry_ingestor import unwrap_payload
from time_utils import from_epoch_ms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telemetry", tags=["telemetry"])

DEFAULT_LIMIT = 2000


class TelemetryResponse(BaseModel):
    id: int
    device_id: str
    event_id: str
    event_type: str
    data_type: str
    data_timestamp: int
    source: str
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    battery: Optional[int] = None
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def _telemetry_query(db: Session, device_id: str, from_ts: Optional[int], to_ts: Optional[int]) -> OrmQuery:
    device = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    if not device:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        )

    query = db.query(MilesightDeviceTelemetry).filter(MilesightDeviceTelemetry.device_id == device_id)
    if from_ts is not None:
        query = query.filter(MilesightDeviceTelemetry.data_timestamp >= from_ts)
    if to_ts is not None:
        query = query.filter(MilesightDeviceTelemetry.data_timestamp <= to_ts)
    return query.order_by(MilesightDeviceTelemetry.data_timestamp.desc(), MilesightDeviceTelemetry.id.desc())


@router.get("/{device_id}", response_model=List[TelemetryResponse])
def list_telemetry(
    device_id: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=100000),
    from_ts: Optional[int] = Query(None, alias="from", description="Epoch milliseconds, inclusive"),
    to_ts: Optional[int] = Query(None, alias="to", description="Epoch milliseconds, inclusive"),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Readings of one device, newest first."""
    return _telemetry_query(db, device_id, from_ts, to_ts).limit(limit).all()


@router.get("/{device_id}/latest", response_model=Optional[TelemetryResponse])
def latest_telemetry(
    device_id: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _telemetry_query(db, device_id, None, None).first()


@router.get("/{device_id}/export.xlsx")
def export_telemetry_excel(
    device_id: str,
    limit: int = Query(10000, ge=1, le=100000),
    from_ts: Optional[int] = Query(None, alias="from"),
    to_ts: Optional[int] = Query(None, alias="to"),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Export readings as an Excel file."""
    rows = _telemetry_query(db, device_id, from_ts, to_ts).limit(limit).all()

    data = []
    for row in rows:
        body = unwrap_payload(row.payload)
        data.append({
            "Timestamp (UTC)": from_epoch_ms(row.data_timestamp).strftime("%Y-%m-%d %H:%M:%S"),
            "Temperature (°C)": row.temperature,
            "Temperature CH1 (°C)": body.get("temperature_left"),
            "Temperature CH2 (°C)": body.get("temperature_right"),
            "Humidity (%)": row.humidity,
            "Battery (%)": row.battery,
            "Source": row.source,
            "Event ID": row.event_id,
        })

    df = pd.DataFrame(data)

    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name='Telemetry')

    output.seek(0)

    filename = f"{device_id}_telemetry_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
    logger.info(f"Exported {len(rows)} telemetry row(s) for {device_id}")

    return StreamingResponse(
        output,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )
