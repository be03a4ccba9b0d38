# graph.py
import logging

import httpx

from errors import RemoteAPIError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://graph.facebook.com/v19.0"
PROFILE_FIELDS = "id,username,followers_count,media_count"


class GraphClient:
    """Thin Instagram Graph API client: the three publishing calls plus a profile read.

    The access token is treated as an opaque bearer credential; refreshing it
    is someone else's job.
    """

    def __init__(self, user_id, access_token, base_url=DEFAULT_BASE_URL,
                 timeout=30.0, http=None):
        self.user_id = user_id
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.Client(base_url=self.base_url, timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.http.close()

    def _request(self, method, path, params=None):
        headers = {"Authorization": f"Bearer {self.access_token}"}
        response = self.http.request(method, path, params=params, headers=headers)
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            error = (data or {}).get("error") if isinstance(data, dict) else None
            if isinstance(error, dict):
                raise RemoteAPIError(
                    response.status_code,
                    error.get("message") or "Graph API error",
                    code=error.get("code"),
                    subcode=error.get("error_subcode"),
                )
            raise RemoteAPIError(response.status_code, response.text[:500] or response.reason_phrase)

        if not isinstance(data, dict):
            raise RemoteAPIError(response.status_code, f"Invalid JSON response: {response.text[:200]}")
        return data

    # ---------------- Publishing ----------------
    def create_container(self, image_url, caption=""):
        data = self._request("POST", f"/{self.user_id}/media",
                             params={"image_url": image_url, "caption": caption})
        creation_id = data.get("id")
        if not creation_id:
            raise RemoteAPIError(200, "media container response carried no id")
        logger.debug("container=%s", creation_id)
        return str(creation_id)

    def container_status(self, creation_id):
        """Return (status_code, status) for a media container."""
        data = self._request("GET", f"/{creation_id}", params={"fields": "status_code,status"})
        return data.get("status_code"), data.get("status")

    def publish_container(self, creation_id):
        data = self._request("POST", f"/{self.user_id}/media_publish",
                             params={"creation_id": creation_id})
        published_id = data.get("id")
        if not published_id:
            raise RemoteAPIError(200, "media_publish response carried no id")
        logger.debug("published=%s", published_id)
        return str(published_id)

    # ---------------- Account ----------------
    def get_profile(self, fields=PROFILE_FIELDS):
        """Basic account info; doubles as a credential check."""
        return self._request("GET", f"/{self.user_id}", params={"fields": fields})
