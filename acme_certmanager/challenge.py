"""
ACME challenge providers and the configurator that registers them on a client.
"""

import http.server
import logging
import threading
from typing import Any, Callable

import dns.exception
import dns.resolver

from acme_certmanager import exceptions, utils
from acme_certmanager.records import CertificateConfig, ChallengeType

logger = logging.getLogger(__name__)

HTTP01_PATH = "/.well-known/acme-challenge/"

ACME_CHALLENGE_KINDS = {
    ChallengeType.HTTP.value: "http-01",
    ChallengeType.DNS.value: "dns-01",
}


def get_challenge_path(token: str) -> str:
    """Return the URL path the CA fetches for an http-01 token."""
    return f"{HTTP01_PATH}{token}"


def get_dns_record_name(domain: str) -> str:
    """Return the TXT record name for a dns-01 challenge; wildcards share their base name."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"_acme-challenge.{domain}"


class HTTP01ProviderServer:
    """
    Answers http-01 challenges from a small threaded HTTP server.

    The server is started when the first token is presented and stopped once
    every token has been cleaned up. The CA must be able to reach ``port``
    (80 unless a proxy forwards the challenge path).
    """

    def __init__(self, host: str = "", port: int = 80) -> None:
        self.host = host
        self.port = port
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()
        self._server: http.server.ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def _make_handler(self):
        tokens = self._tokens

        class ChallengeHandler(http.server.BaseHTTPRequestHandler):
            def do_GET(self):
                if self.path.startswith(HTTP01_PATH):
                    token = self.path[len(HTTP01_PATH):]
                    key_auth = tokens.get(token)
                    if key_auth is not None:
                        body = key_auth.encode("ascii")
                        self.send_response(200)
                        self.send_header("Content-Type", "text/plain")
                        self.send_header("Content-Length", str(len(body)))
                        self.end_headers()
                        self.wfile.write(body)
                        return

                self.send_response(404)
                self.end_headers()

            def log_message(self, format, *args):
                logger.debug(f"http-01 {self.address_string()} {format % args}")

        return ChallengeHandler

    @property
    def running(self) -> bool:
        return self._server is not None

    def present(self, domain: str, token: str, key_authorization: str) -> None:
        with self._lock:
            self._tokens[token] = key_authorization
            if self._server is None:
                self._server = http.server.ThreadingHTTPServer((self.host, self.port), self._make_handler())
                self._thread = threading.Thread(
                    target=self._server.serve_forever, name="http-01-responder", daemon=True
                )
                self._thread.start()
                logger.info(f"HTTP challenge server listening on {self.host or '*'}:{self.port}")
        logger.debug(f"Serving http-01 token for {domain} at {get_challenge_path(token)}")

    def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)
            if self._tokens or self._server is None:
                return
            server, self._server = self._server, None
            thread, self._thread = self._thread, None

        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("HTTP challenge server stopped")


class ManualDNSProvider:
    """
    Asks an operator to publish the dns-01 TXT record and waits for confirmation.

    There is no timeout: the call blocks until the operator answers the prompt.
    After confirmation the record is looked up once; a missing or different
    value is logged but left for the CA to judge.
    """

    def __init__(
        self,
        prompt: Callable[[str], Any] = input,
        verify: bool = True,
        nameservers: list[str] | None = None,
    ) -> None:
        self.prompt = prompt
        self.verify = verify
        self.nameservers = nameservers

    def present(self, domain: str, token: str, key_authorization: str) -> None:
        fqdn = get_dns_record_name(domain)
        value = utils.dns01_txt_value(key_authorization)

        logger.info(f"dns-01 challenge for {domain}: publish TXT {fqdn} \"{value}\"")
        print(f"Please create the following TXT record in your {domain} zone:")
        print(f"{fqdn}. 120 IN TXT \"{value}\"")
        self.prompt("Press 'Enter' when you are done")

        if self.verify:
            self._check_record(fqdn, value)

    def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        fqdn = get_dns_record_name(domain)
        value = utils.dns01_txt_value(key_authorization)
        print(f"You can now remove this TXT record from your {domain} zone:")
        print(f"{fqdn}. 120 IN TXT \"{value}\"")

    def _check_record(self, fqdn: str, value: str) -> bool:
        resolver = dns.resolver.Resolver()
        if self.nameservers:
            resolver.nameservers = self.nameservers

        try:
            answers = resolver.resolve(fqdn, "TXT")
        except dns.exception.DNSException as e:
            logger.warning(f"TXT lookup for {fqdn} failed: {e}")
            return False

        found = [b"".join(rdata.strings).decode("ascii", errors="replace") for rdata in answers]
        if value in found:
            logger.info(f"TXT record {fqdn} is visible")
            return True

        logger.warning(f"TXT record {fqdn} does not contain the expected value yet (found: {found})")
        return False


class ChallengeConfigurator:
    """
    Maps a challenge type tag to a function that installs its provider on an ACME client.

    New validation methods are added with :meth:`register`; DNS providers with
    :meth:`register_dns_provider`. Providers are built fresh on every call to
    :meth:`configure`.
    """

    def __init__(
        self,
        http_host: str = "",
        http_port: int = 80,
        dns_prompt: Callable[[str], Any] = input,
        verify_dns: bool = True,
    ) -> None:
        self.http_host = http_host
        self.http_port = http_port

        self._configurators: dict[str, Callable[[Any, CertificateConfig], None]] = {
            ChallengeType.HTTP.value: self._configure_http,
            ChallengeType.DNS.value: self._configure_dns,
        }
        self._dns_providers: dict[str, Callable[[], Any]] = {
            "manual": lambda: ManualDNSProvider(prompt=dns_prompt, verify=verify_dns),
        }

    def register(self, challenge_type: str, configurator: Callable[[Any, CertificateConfig], None]) -> None:
        self._configurators[challenge_type] = configurator

    def register_dns_provider(self, name: str, factory: Callable[[], Any]) -> None:
        self._dns_providers[name] = factory

    def supported_challenge_types(self) -> list[str]:
        return list(self._configurators)

    def supported_dns_providers(self) -> list[str]:
        return list(self._dns_providers)

    def configure(self, client: Any, challenge_type: str, options: CertificateConfig | None = None) -> None:
        """
        Install the provider for ``challenge_type`` on ``client``, replacing any earlier provider.

        Raises:
            exceptions.UnsupportedChallengeType: If no configurator is registered for the type.
            exceptions.UnsupportedDNSProvider: If a DNS provider other than a registered one is requested.
            exceptions.ChallengeSetupFailure: If the provider cannot be created or registered.
        """
        challenge_type = getattr(challenge_type, "value", challenge_type)
        configurator = self._configurators.get(challenge_type)
        if configurator is None:
            raise exceptions.UnsupportedChallengeType(challenge_type)

        if options is None:
            options = CertificateConfig(challenge_type=challenge_type)

        logger.debug(f"Configuring {challenge_type} challenge")
        client.clear_challenge_providers()
        try:
            configurator(client, options)
        except exceptions.CertManagerError:
            raise
        except Exception as e:
            logger.error(f"Failed to set up {challenge_type} challenge: {e}")
            raise exceptions.ChallengeSetupFailure(challenge_type, e) from e

    def _configure_http(self, client: Any, options: CertificateConfig) -> None:
        provider = HTTP01ProviderServer(self.http_host, self.http_port)
        client.set_challenge_provider(ACME_CHALLENGE_KINDS[ChallengeType.HTTP.value], provider)

    def _configure_dns(self, client: Any, options: CertificateConfig) -> None:
        name = options.dns_provider or "manual"
        factory = self._dns_providers.get(name)
        if factory is None:
            raise exceptions.UnsupportedDNSProvider(name)
        client.set_challenge_provider(ACME_CHALLENGE_KINDS[ChallengeType.DNS.value], factory())
