import logging
import time
from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acme_certmanager import exceptions, utils

if TYPE_CHECKING:
    from acme_certmanager.acme import AcmeClient

logger = logging.getLogger(__name__)


class Resource:
    """Base class representing a generic ACME resource."""

    POLL_INTERVAL = 1
    POLL_TIMEOUT = 300
    MAX_RETRIES = 5

    def __init__(self, client: "AcmeClient", url: str, data: dict[str, Any] | None = None):
        self.client = client
        self.url = url
        self._data: dict[str, Any] | None = data
        self._retry_after = time.monotonic()

    @property
    def status(self) -> str:
        """Get the status of the resource."""
        if not self._data:
            return ""
        return self._data.get("status", "")

    @property
    def error(self) -> dict[str, Any] | None:
        """Problem document attached by the server, if any."""
        if not self._data:
            return None
        return self._data.get("error")

    def get_json_response(self, r: Any) -> dict[str, Any]:
        """
        Parse the JSON response from the request.

        Raises:
            exceptions.AcmeError: If the response is not valid JSON.
        """
        try:
            if r.status_code == 204:
                return {}
            return r.json()
        except ValueError:
            raise exceptions.AcmeError(f"Invalid JSON response: {r.text}") from None

    def update(self) -> None:
        """Refresh the resource with POST-as-GET, retrying with exponential backoff."""
        r = None

        for attempt in range(self.MAX_RETRIES):
            try:
                r = self.client.signed_request(self.url, payload=None)

                if r.status_code not in (200, 202):
                    raise exceptions.AcmeError(f"Failed to update resource: {r.status_code}")

                self._data = self.get_json_response(r)

                self._retry_after = time.monotonic() + int(
                    r.headers.get("Retry-After", self.POLL_INTERVAL)
                )

                if self._data:
                    return

            except Exception as e:
                logger.error(f"Error while updating resource: {e}")
                wait_time = 2**attempt

                if r is not None:
                    wait_time = int(r.headers.get("Retry-After", wait_time))

                time.sleep(wait_time)

        raise exceptions.AcmeError(f"Failed to update {self.url} after {self.MAX_RETRIES} attempts")

    def poll_until_not(self, statuses: set[str], timeout: float | None = None) -> None:
        """
        Poll the resource until its status is not in the specified set.

        Raises:
            exceptions.AcmeError: If the status does not change within ``timeout`` seconds.
        """
        deadline = time.monotonic() + (self.POLL_TIMEOUT if timeout is None else timeout)

        while self.status in statuses:
            if time.monotonic() > deadline:
                raise exceptions.AcmeError(f"Timed out waiting for {self.url} to leave {self.status}")
            logger.debug(f"Polling {self}, current status: {self.status}")
            delay = self._retry_after - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            self.update()

    def __getitem__(self, item: str) -> Any:
        if not self._data:
            self.update()

        if self._data is None:
            raise ValueError("Resource data is None")

        return self._data.get(item)

    def __repr__(self) -> str:
        data = repr(self._data) if self._data else "..."
        return f"<{self.__class__.__name__} {self.url} {data}>"


class Registration(Resource):
    """The CA's record of an ACME account."""

    @property
    def contact(self) -> list[str] | None:
        """Return the contact URIs registered with the account."""
        if not self._data:
            return None
        return self._data.get("contact")


class Challenge(Resource):
    """Class representing an ACME challenge."""

    @property
    def type(self) -> str:
        if not self._data:
            self.update()
        if self._data:
            return self._data.get("type", "")
        return ""

    @property
    def token(self) -> str:
        return self["token"] or ""

    def respond(self) -> None:
        """Tell the server the challenge is ready to be validated."""
        r = self.client.signed_request(self.url, {})
        if r.status_code != 200:
            raise exceptions.AcmeChallengeError(f"Failed to respond to challenge: {r.status_code}")
        self._data = self.get_json_response(r)


class Authorization(Resource):
    """Class representing an ACME authorization."""

    @property
    def identifier(self) -> dict[str, Any]:
        return self["identifier"]

    @property
    def is_wildcard(self) -> bool:
        return bool(self["wildcard"])

    @property
    def domain(self) -> str:
        """The identifier as it was requested, with the ``*.`` prefix restored for wildcards."""
        value = self.identifier["value"]
        return f"*.{value}" if self.is_wildcard else value

    @property
    def challenges(self) -> list[Challenge]:
        """Get the list of challenges offered for the authorization."""
        if not self._data or "challenges" not in self._data:
            self.update()
        if not self._data:
            raise ValueError("Authorization data is None")

        return [
            Challenge(self.client, challenge["url"], challenge)
            for challenge in self._data.get("challenges", [])
        ]

    def find_challenge(self, types: list[str]) -> Challenge | None:
        """Return the first offered challenge whose type is in ``types``, honouring their order."""
        offered = {challenge.type: challenge for challenge in self.challenges}
        for challenge_type in types:
            if challenge_type in offered:
                return offered[challenge_type]
        return None


class Order(Resource):
    """Class representing an ACME order."""

    @property
    def authorizations(self) -> list[Authorization]:
        if not self._data:
            raise ValueError("Order data is None")

        return [Authorization(self.client, url) for url in self._data.get("authorizations", [])]

    def finalize(self, csr: x509.CertificateSigningRequest) -> None:
        """
        Finalize the order with the provided CSR.

        Raises:
            exceptions.AcmeOrderError: If the order is not in the "ready" state.
        """
        logger.debug(f"status: {self.status}")
        if self.status != "ready":
            raise exceptions.AcmeOrderError(f"Invalid state: {self.status}")

        csr_b64 = utils.b64url(csr.public_bytes(serialization.Encoding.DER))

        if not self._data:
            raise ValueError("Order data is None")

        r = self.client.signed_request(self._data.get("finalize", ""), {"csr": csr_b64})
        if r.status_code != 200:
            raise exceptions.AcmeOrderError(f"Failed to finalize order: {r.status_code} - {r.text}")
        self._data = self.get_json_response(r)

    def certificate(self) -> bytes:
        """
        Download the certificate chain of a valid order, exactly as the CA sent it.

        Raises:
            exceptions.AcmeOrderError: If the order is not in the "valid" state.
        """
        if self.status != "valid":
            raise exceptions.AcmeOrderError(f"Invalid state: {self.status}")

        if not self._data:
            raise ValueError("Order data is None")

        r = self.client.signed_request(self._data.get("certificate", ""))
        if r.status_code != 200:
            raise exceptions.AcmeOrderError(f"Failed to download certificate: {r.status_code}")

        return r.content
