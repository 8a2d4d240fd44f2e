from adreport.connectors.naver_searchad import (
    NaverCredentials,
    NaverSearchAdClient,
    ReportJob,
    sign,
    split_download_locator,
)
from adreport.connectors.report_jobs import PollResult, create_and_poll, poll_report_job

__all__ = [
    "NaverCredentials",
    "NaverSearchAdClient",
    "ReportJob",
    "PollResult",
    "sign",
    "split_download_locator",
    "create_and_poll",
    "poll_report_job",
]
