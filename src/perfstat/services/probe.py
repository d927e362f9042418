from typing import Optional

import requests
from pydantic import ValidationError

from perfstat.domain.models import FormResponse
from perfstat.exceptions import MetadataError


class HttpContentProbe:
    """
    Asks a remote perfstat API whether a (module, topic ordinal) position has content.
    One request per call; failures surface as MetadataError so the walker can move on.
    """

    PATH = "/performance-statistics/performance"

    def __init__(
        self,
        base_url: str,
        role: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = base_url.rstrip("/") + self.PATH
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {}
        if role:
            self.headers["X-User-Role"] = role
        if api_token:
            self.headers["Authorization"] = f"Bearer {api_token}"

    def __call__(self, module_id: int, ordinal: int) -> Optional[FormResponse]:
        try:
            resp = self.session.get(
                self.url,
                params={"module": module_id, "ordinal": ordinal},
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:  # network failure
            raise MetadataError(f"Probe request failed for module {module_id} topic #{ordinal}: {exc}") from exc

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise MetadataError(f"Probe for module {module_id} topic #{ordinal} returned {resp.status_code}")

        try:
            body = resp.json()
            data = body.get("data") if isinstance(body, dict) and "data" in body else body
            return FormResponse.model_validate(data)
        except (ValueError, ValidationError) as exc:
            raise MetadataError(f"Probe response for module {module_id} is malformed: {exc}") from exc
