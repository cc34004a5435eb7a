"""Donation exports as CSV or Excel files."""

from datetime import datetime
from io import BytesIO
from typing import Iterable

import pandas as pd
from fastapi.responses import StreamingResponse

EXPORT_FORMATS = ("csv", "excel")
EXPORT_COLUMNS = [
    "Donation ID", "Investor", "Institution", "Amount", "Currency", "Status",
    "Donation Date", "Message", "Created At", "Updated At",
]


def _timestamp(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def donations_frame(donations: Iterable) -> pd.DataFrame:
    data = []
    for donation in donations:
        data.append({
            "Donation ID": donation.id,
            "Investor": donation.investor.display_name if donation.investor else "",
            "Institution": donation.institution.institution_name if donation.institution else "",
            "Amount": donation.amount,
            "Currency": donation.currency,
            "Status": donation.status,
            "Donation Date": _timestamp(donation.donation_date),
            "Message": donation.message or "",
            "Created At": _timestamp(donation.created_at),
            "Updated At": _timestamp(donation.updated_at),
        })
    return pd.DataFrame(data, columns=EXPORT_COLUMNS)


def export_donations(donations: Iterable, format: str, prefix: str = "donations") -> StreamingResponse:
    """Stream donations as a CSV or Excel attachment."""
    df = donations_frame(donations)

    filename = f"{prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.{format if format == 'csv' else 'xlsx'}"

    output = BytesIO()

    if format == "excel":
        df.to_excel(output, index=False, engine='openpyxl')
        media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    else:
        df.to_csv(output, index=False)
        media_type = "text/csv"

    output.seek(0)

    return StreamingResponse(
        output,
        media_type=media_type,
        headers={
            "Content-Disposition": f"attachment; filename={filename}"
        }
    )
