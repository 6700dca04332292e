# asset_loader/core/http.py
from typing import Iterable

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .. import __version__

USER_AGENT = f"asset-loader/{__version__}"
RETRY_STATUSES = (429, 500, 502, 503, 504)

def make_session(retries: int = 2, backoff: float = 0.3, pool_size: int = 10,
                 retry_statuses: Iterable[int] = RETRY_STATUSES) -> requests.Session:
    """
    Shared session for probes and downloads. Transient statuses are retried
    by urllib3 on idempotent verbs only; the final status is handed back
    (raise_on_status=False) so the downloader can map it to HttpError.
    """
    policy = Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=tuple(retry_statuses),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=policy, pool_connections=pool_size, pool_maxsize=pool_size)
    session = requests.Session()
    for prefix in ("https://", "http://"):
        session.mount(prefix, adapter)
    session.headers["User-Agent"] = USER_AGENT
    session.headers["Accept"] = "application/octet-stream, */*"
    return session

SESSION = make_session()
