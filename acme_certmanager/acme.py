import logging
from typing import Any

import requests
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from acme_certmanager import exceptions, models, utils, validation
from acme_certmanager.certificate import generate_csr, generate_private_key
from acme_certmanager.monitoring import timer
from acme_certmanager.records import CertificateBundle

logger = logging.getLogger(__name__)

CERTIFICATE_KEY_SIZE = 2048


def client_factory(directory_url: str | None = None, dry_run: bool = False, user_agent: str | None = None):
    """Return a callable building an AcmeClient for ``(account_key, email)``."""

    def build(account_key: rsa.RSAPrivateKey, email: str) -> "AcmeClient":
        client = AcmeClient(account_key, email=email, directory_url=directory_url, dry_run=dry_run)
        if user_agent:
            client.add_headers({"User-Agent": user_agent})
        return client

    return build


class AcmeClient:
    """
    Client for interacting with an ACME (RFC 8555) certificate authority.

    One client is bound to one account key. Challenge providers registered with
    :meth:`set_challenge_provider` are used by :meth:`obtain_certificate` to
    prove control over each requested domain.
    """

    DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
    TEST_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

    def __init__(
        self,
        account_key: rsa.RSAPrivateKey,
        email: str | None = None,
        directory_url: str | None = None,
        dry_run: bool = False,
        timeout: int = 30,
    ):
        """
        Initialize the AcmeClient.

        Args:
        - account_key (rsa.RSAPrivateKey): The RSA private key for the account.
        - email (str | None): Contact address sent when registering.
        - directory_url (str | None): Directory to use instead of the Let's Encrypt defaults.
        - dry_run (bool): Use the staging directory when no directory_url is given.
        - timeout (int): Per-request timeout in seconds.
        """
        self.http = requests.Session()
        self.account_key = account_key
        self.email = email
        self.dry_run = dry_run
        self.timeout = timeout
        self.directory_url = directory_url or (
            self.TEST_DIRECTORY_URL if dry_run else self.DIRECTORY_URL
        )

        self._directory: dict[str, Any] | None = None
        self._nonce: str | None = None
        self._key_id: str = ""
        self._registration: models.Registration | None = None
        self._providers: dict[str, Any] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.http.close()

    def close(self):
        """Close the AcmeClient."""
        self.__exit__(None, None, None)

    def add_headers(self, headers: dict[str, str]) -> None:
        """Add headers to the HTTP session."""
        self.http.headers.update(headers)

    @property
    def registration(self) -> models.Registration | None:
        return self._registration

    def clone(self) -> "AcmeClient":
        """
        Return a client for the same account with its own HTTP session and challenge providers.

        The directory and account URL are reused so the clone does not have to
        register again.
        """
        other = AcmeClient(
            self.account_key,
            email=self.email,
            directory_url=self.directory_url,
            dry_run=self.dry_run,
            timeout=self.timeout,
        )
        other.http.headers.update(self.http.headers)
        other._directory = self._directory
        other._key_id = self._key_id
        other._registration = self._registration
        return other

    # Challenge providers

    def set_challenge_provider(self, kind: str, provider: Any) -> None:
        """
        Register the provider used to solve challenges of ``kind`` (e.g. ``http-01``).

        Providers implement ``present(domain, token, key_authorization)`` and
        ``cleanup(domain, token, key_authorization)``.
        """
        if not callable(getattr(provider, "present", None)) or not callable(
            getattr(provider, "cleanup", None)
        ):
            raise TypeError(f"Challenge provider for {kind} must implement present() and cleanup()")
        logger.debug(f"Using {type(provider).__name__} for {kind} challenges")
        self._providers[kind] = provider

    def clear_challenge_providers(self) -> None:
        self._providers.clear()

    @property
    def challenge_providers(self) -> dict[str, Any]:
        return dict(self._providers)

    # Account

    def register_or_load_account(self, terms_of_service_agreed: bool = True) -> models.Registration:
        """
        Register the account key with the CA, or load the existing registration.

        The CA answers 201 for a new account and 200 when the key is already
        registered, so this is safe to repeat.

        Raises:
            exceptions.AcmeError: If the CA rejects the registration.
        """
        payload: dict[str, Any] = {"termsOfServiceAgreed": terms_of_service_agreed}
        if self.email:
            payload["contact"] = [f"mailto:{self.email}"]

        public_jwk = utils.rsa_jwk_public(self.account_key)
        r = self._signed_request(
            url=str(self.url_for("newAccount")),
            key={"alg": "RS256", "jwk": public_jwk},
            payload=payload,
        )

        if r.status_code not in (200, 201):
            raise exceptions.AcmeError(f"Failed to register ACME account: {r.status_code} - {r.text}")

        self._key_id = r.headers["Location"]
        self._registration = models.Registration(self, self._key_id, r.json())
        logger.info(f"ACME account {'created' if r.status_code == 201 else 'loaded'}: {self._key_id}")
        return self._registration

    # Orders

    def new_order(self, domains: list[str]) -> models.Order:
        """
        Create a new order covering all of ``domains``.

        Raises:
            exceptions.AcmeOrderError: If the CA does not accept the order.
        """
        url = self.url_for("newOrder")

        all_domains: list[str] = []
        for domain in domains:
            if domain not in all_domains:
                all_domains.append(domain)

        payload = {"identifiers": [{"type": "dns", "value": d} for d in all_domains]}

        logger.debug(f"Creating new order with URL {url} and payload: {payload}")

        response = self.signed_request(url, payload)

        if response.status_code != 201:
            logger.error(f"Failed to create new order: {response.status_code} - {response.text}")
            raise exceptions.AcmeOrderError(
                f"Failed to create order for {', '.join(all_domains)}: {response.status_code}"
            )

        try:
            return models.Order(self, response.headers["Location"], response.json())
        except (KeyError, ValueError) as e:
            raise exceptions.AcmeOrderError(f"Malformed order response: {e}") from e

    def obtain_certificate(self, domains: list[str]) -> CertificateBundle:
        """
        Run one order for all ``domains`` and return the issued chain and its private key.

        Every authorization must succeed; a failure for any domain fails the whole order.
        Names are sent to the CA in lower case. The returned bundle keeps ``domains``
        as given and the chain bytes exactly as the CA sent them.

        Raises:
            exceptions.AcmeError: If any protocol step fails before the chain is returned.
            exceptions.ChainVerificationFailure: If the returned chain is malformed or does
                not cover every domain. The issued material is carried on the error.
        """
        if not domains:
            raise ValueError("At least one domain is required")
        if not self._providers:
            raise exceptions.AcmeChallengeError("No challenge provider configured")

        if not self._key_id:
            self.register_or_load_account()

        names: list[str] = []
        for domain in domains:
            if domain.lower() not in names:
                names.append(domain.lower())

        with timer(f"Order for {', '.join(names)}"):
            order = self.new_order(names)

            for authorization in order.authorizations:
                self._solve_authorization(authorization)

            private_key = generate_private_key(CERTIFICATE_KEY_SIZE)
            csr = generate_csr(names[0], private_key, names[1:])
            chain = self._finalize(order, csr)

        bundle = CertificateBundle(
            domains=list(domains),
            certificate=chain,
            private_key=utils.private_key_to_pem(private_key),
            certificate_url=order["certificate"] or "",
        )
        self._verify_chain(bundle)
        return bundle

    def _verify_chain(self, bundle: CertificateBundle) -> None:
        text = validation.normalize_certificate(bundle.certificate.decode("ascii", errors="replace"))

        is_valid, error = validation.validate_certificate_format(text)
        if is_valid:
            is_valid, error, cert_count = validation.validate_certificate_chain(text, bundle.domains)
        if not is_valid:
            logger.critical(
                f"CA returned a chain for {', '.join(bundle.domains)} that failed verification: {error}"
            )
            raise exceptions.ChainVerificationFailure(bundle, error)

        logger.info(f"Certificate chain contains {cert_count} certificate(s)")

    def _solve_authorization(self, authorization: models.Authorization) -> None:
        if authorization.status == "valid":
            logger.info(f"Authorization for {authorization.domain} is already valid")
            return

        domain = authorization.domain
        challenge = authorization.find_challenge(list(self._providers))
        if challenge is None:
            offered = [c.type for c in authorization.challenges]
            raise exceptions.AcmeChallengeError(
                f"No supported challenge for {domain}. Available: {offered}, "
                f"Supported: {list(self._providers)}"
            )

        provider = self._providers[challenge.type]
        token = challenge.token
        key_auth = utils.key_authorization(token, self.account_key)

        logger.info(f"Solving {challenge.type} challenge for {domain}")
        provider.present(domain, token, key_auth)
        try:
            challenge.respond()
            authorization.poll_until_not({"pending"})
        finally:
            try:
                provider.cleanup(domain, token, key_auth)
            except Exception as e:
                logger.warning(f"Failed to clean up challenge for {domain}: {e}")

        if authorization.status != "valid":
            raise exceptions.AcmeChallengeError(
                f"Authorization for {domain} is {authorization.status}: {authorization.error}"
            )

    def _finalize(self, order: models.Order, csr) -> bytes:
        logger.info("Finalizing order")

        order.poll_until_not({"pending"})
        order.finalize(csr)
        order.poll_until_not({"processing"})

        if order.status != "valid":
            raise exceptions.AcmeOrderError(f"Order finalization unsuccessful: {order.status} {order.error}")

        chain = order.certificate()
        logger.info("Certificate retrieved successfully")
        return chain

    # Transport

    def url_for(self, resource: str) -> str:
        """
        Get the URL for a specific ACME resource from the directory.

        Raises:
            exceptions.AcmeError: If the directory cannot be fetched or lacks the resource.
        """
        if not self._directory:
            try:
                r = self.http.get(self.directory_url, timeout=self.timeout)
                r.raise_for_status()
                self._directory = r.json()
            except (requests.exceptions.RequestException, ValueError) as e:
                raise exceptions.AcmeError(f"Failed to fetch ACME directory: {e}") from e
            logger.debug(f"Fetched directory: {self._directory}")

        url = self._directory.get(resource)
        if not url:
            raise exceptions.AcmeError(f"ACME directory has no '{resource}' resource")
        return url

    def signed_request(self, url: str, payload: dict[str, Any] | None = None) -> requests.Response:
        """
        Send a request signed with the account URL (``kid``).

        Registers the account first when no account URL is known.

        Args:
        - url (str): URL for the request.
        - payload (dict | None): Payload data for the request. None for POST-as-GET.
        """
        if not self._key_id:
            logger.debug("Key ID not found. Loading account.")
            self.register_or_load_account()

        return self._signed_request(
            url=url,
            key={"alg": "RS256", "kid": self._key_id},
            payload=payload,
        )

    def format_data(self, url: str, key: dict[str, Any], payload: dict[str, Any] | None) -> dict[str, Any]:
        """Build the flattened JWS body for a request."""
        protected_header = {"url": url, "nonce": self._nonce, **key}
        protected = utils.b64url(utils.json_encode(protected_header))

        # POST-as-GET uses an empty payload
        dumped_payload = "" if payload is None else utils.b64url(utils.json_encode(payload))

        signing_input = f"{protected}.{dumped_payload}".encode("utf-8")
        signature = utils.b64url(self.account_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256()))

        return {
            "protected": protected,
            "payload": dumped_payload,
            "signature": signature,
        }

    def _signed_request(
        self, url: str, key: dict[str, Any], payload: dict[str, Any] | None
    ) -> requests.Response:
        """Send a signed request to the ACME server with nonce handling."""
        if not self._nonce:
            self._new_nonce()

        for attempt in range(2):  # try once, then retry if badNonce
            data = self.format_data(url, key, payload)
            headers = {"Content-Type": "application/jose+json"}

            logger.debug(f"Sending signed request to {url} (attempt {attempt + 1})")

            try:
                response = self.http.post(url, headers=headers, json=data, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                raise exceptions.AcmeError(f"Error sending signed request to {url}: {e}") from e

            new_nonce = response.headers.get("Replay-Nonce")
            if new_nonce:
                self._nonce = new_nonce

            if response.status_code == 400:
                try:
                    err = response.json()
                except ValueError:
                    err = {}
                if err.get("type") == "urn:ietf:params:acme:error:badNonce":
                    logger.warning("badNonce received, retrying once with new nonce")
                    self._new_nonce()
                    continue

            return response

        raise exceptions.AcmeError("ACME request failed after badNonce retry")

    def _new_nonce(self) -> None:
        """Get a new nonce from the ACME server."""
        url = self.url_for("newNonce")
        try:
            r = self.http.head(url, timeout=self.timeout)
            r.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise exceptions.AcmeError(f"Failed to fetch nonce: {e}") from e

        self._nonce = r.headers["Replay-Nonce"]
