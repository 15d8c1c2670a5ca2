"""
Linode Object Storage API client.

See https://www.linode.com/docs/api/object-storage/.
"""

import logging
from typing import Any, Union
from urllib.parse import quote, urljoin

import requests
import requests.auth

logger = logging.getLogger(__name__)

LINODE_API = "https://api.linode.com/"
DEFAULT_TIMEOUT = 30


class LinodeObjectStorageClient:
    """
    Object Storage Client for Linode.

    Bucket management goes through the Linode API with bearer authentication.
    Object bodies are transferred through pre-signed URLs, which must not carry
    the API token.

    Attributes:
        http (requests.Session): Session for Linode API requests.
        timeout (int): Per-request timeout in seconds.
    """

    def __init__(self, token: str, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.http = requests.Session()
        self.http.auth = BearerAuth(token)
        self.timeout = timeout

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.http.close()

    def close(self) -> None:
        """Closes the HTTP session."""
        self.__exit__(None, None, None)

    def add_headers(self, headers: dict[str, str]) -> None:
        """Adds headers to the API session."""
        self.http.headers.update(headers)

    def list_buckets(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """
        Retrieves all buckets visible to the token, following pagination.

        Raises:
            requests.exceptions.RequestException: If any page cannot be fetched.
        """
        if params is None:
            params = {}

        all_buckets: list[dict[str, Any]] = []
        page = 1
        total_pages = 1

        url = urljoin(LINODE_API, "v4/object-storage/buckets")

        try:
            while page <= total_pages:
                response = self.http.get(url, params={**params, "page": page}, timeout=self.timeout)
                response.raise_for_status()

                data = response.json()
                current_buckets = data.get("data", [])
                all_buckets.extend(current_buckets)

                total_pages = data.get("pages", page)

                if not current_buckets:
                    break

                page += 1
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error while fetching buckets: {e}")
            raise

        return all_buckets

    def create_object_url(
        self,
        cluster: str,
        label: str,
        name: str,
        method: str = "GET",
        content_type: str = "",
        expires_in: int = -1,
    ) -> str:
        """
        Generates a pre-signed URL for reading or writing an object in the bucket.

        Raises:
            ValueError: If the method is not supported.
            requests.exceptions.RequestException: If the Linode API call fails.
        """
        if method not in ["GET", "PUT", "DELETE"]:
            raise ValueError("Method must be one of GET, PUT, or DELETE")

        payload: dict[str, Union[str, int]] = {"method": method, "name": name}

        if expires_in >= 0:
            payload["expires_in"] = expires_in

        if content_type:
            payload["content_type"] = content_type

        url = urljoin(
            LINODE_API,
            f"v4/object-storage/buckets/{quote(cluster)}/{quote(label)}/object-url",
        )

        logger.debug(f"Creating object URL for {method} {label}/{name}")

        try:
            r = self.http.post(url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            return r.json()["url"]
        except requests.exceptions.RequestException as e:
            logger.error(f"HTTP request to generate object URL failed: {e}")
            if e.response is not None:
                try:
                    logger.error(f"Error detail from Linode API: {e.response.json()}")
                except ValueError:
                    logger.error(f"Error response body: {e.response.text}")
            raise

    def put_object(self, url: str, data: bytes, content_type: str) -> None:
        """
        Uploads an object body through a pre-signed URL.

        Raises:
            requests.HTTPError: If the upload is rejected.
        """
        response = requests.put(
            url, data=data, headers={"Content-Type": content_type}, timeout=self.timeout
        )
        response.raise_for_status()

    def get_object(self, url: str) -> bytes:
        """
        Downloads an object body through a pre-signed URL.

        Raises:
            requests.HTTPError: If the object cannot be read (404 when missing).
        """
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content


class BearerAuth(requests.auth.AuthBase):
    """
    Bearer Authentication for Linode API.

    Attributes:
        token (str): The Bearer token used for authentication.
    """

    def __init__(self, token: str) -> None:
        self._token = token

    def __call__(self, r: requests.Request) -> requests.Request:
        """Adds the Bearer token to the Authorization header of the request."""
        r.headers["Authorization"] = f"Bearer {self._token}"
        return r
