from abc import ABC, abstractmethod
from typing import Optional

import httpx

from groupbuy.config.settings import settings
from groupbuy.utils.errors import BusinessLogicError
from groupbuy.utils.logging import get_logger

logger = get_logger()

REPORT_KINDS = ("admin", "supplier")


class ReportGenerator(ABC):
    """Produces the PDF reports attached to a general order summary."""

    @abstractmethod
    async def generate_report(self, general_order_id: str, kind: str) -> bytes:
        pass


class HttpReportGenerator(ReportGenerator):
    """Asks the PDF service to render a report for a closed general order."""

    def __init__(self, base_url: str = "", timeout: float = 0):
        self.base_url = base_url or settings.REPORT_GENERATOR_URL
        self.timeout = timeout or settings.REPORT_TIMEOUT_SECONDS

    async def generate_report(self, general_order_id: str, kind: str) -> bytes:
        if kind not in REPORT_KINDS:
            raise BusinessLogicError(
                f"Unknown report kind: {kind}", error_code="UNKNOWN_REPORT_KIND"
            )

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.base_url,
                json={"general_order_id": general_order_id, "report_type": kind},
                timeout=self.timeout,
            )

        if response.status_code != 200:
            raise BusinessLogicError(
                f"Report generation failed: {response.status_code} - {response.text[:300]}",
                error_code="REPORT_GENERATION_FAILED",
            )

        if not response.content:
            raise BusinessLogicError(
                "Report generator returned an empty document",
                error_code="REPORT_EMPTY",
            )
        return response.content


def get_report_generator() -> Optional[ReportGenerator]:
    """None when no REPORT_GENERATOR_URL is configured; summaries then go without PDFs."""
    if not settings.REPORT_GENERATOR_URL:
        return None
    return HttpReportGenerator()
