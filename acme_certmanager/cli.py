#!/usr/bin/env python3
"""
Command-line interface for the ACME certificate manager.
"""

import argparse
import logging
import sys
from dataclasses import replace

from acme_certmanager import exceptions
from acme_certmanager.config import Settings, build_manager
from acme_certmanager.records import CertificateConfig, ChallengeType

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_PERSISTED = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parses command-line arguments.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="acme-certmanager",
        description="ACME account and certificate management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create (or load) the account for an email
  %(prog)s account admin@example.com

  # Issue a certificate using the http-01 challenge
  %(prog)s certificate -e admin@example.com -d example.com -d www.example.com

  # Issue a wildcard certificate with a manually created DNS record
  %(prog)s certificate -e admin@example.com -d example.com -d '*.example.com' --challenge dns

  # Run the HTTP API against the staging environment
  %(prog)s --dry-run serve --port 8080
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the ACME staging environment for testing",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    account_parser = subparsers.add_parser("account", help="Create or load the account for an email")
    account_parser.add_argument("email", help="Contact email of the account")

    certificate_parser = subparsers.add_parser("certificate", help="Issue a certificate")
    certificate_parser.add_argument("-e", "--email", required=True, help="Contact email of the owning account")
    certificate_parser.add_argument(
        "-d",
        "--domain",
        action="append",
        required=True,
        help="Domain name (e.g., example.com or *.example.com). Can be specified multiple times.",
    )
    certificate_parser.add_argument(
        "--challenge",
        choices=[c.value for c in ChallengeType],
        default=ChallengeType.HTTP.value,
        help="Domain validation method (default: http)",
    )
    certificate_parser.add_argument(
        "--dns-provider",
        default="manual",
        help="DNS provider for the dns challenge (default: manual)",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", help="Address to bind (default: API_HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind (default: API_PORT or 8080)")

    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    """
    Configures the logging settings based on the verbosity level.

    Args:
        verbose: If True, enable DEBUG logging; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )


def run_account(settings: Settings, args: argparse.Namespace) -> int:
    with build_manager(settings) as manager:
        account = manager.new_account(args.email)
    print(account.id)
    return EXIT_OK


def run_certificate(settings: Settings, args: argparse.Namespace) -> int:
    config = CertificateConfig(challenge_type=args.challenge, dns_provider=args.dns_provider)
    with build_manager(settings) as manager:
        account = manager.new_account(args.email)
        certificate = manager.new_certificate(args.domain, account, config)

    logger.info(f"Certificate {certificate.id} issued for {', '.join(certificate.domains)}")
    print(certificate.id)
    return EXIT_OK


def run_serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    from acme_certmanager.api import create_app

    host = args.host or settings.api_host
    port = args.port or settings.api_port

    with build_manager(settings) as manager:
        app = create_app(manager, settings)
        logger.info(f"Starting api server on {host}:{port}...")
        uvicorn.run(app, host=host, port=port, log_config=None, access_log=False)
    return EXIT_OK


COMMANDS = {
    "account": run_account,
    "certificate": run_certificate,
    "serve": run_serve,
}


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        int: Exit code (0 for success, 1 for failure, 2 when an issued
        certificate could not be stored, 130 when interrupted).
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = Settings.from_env()
        if args.dry_run:
            settings = replace(settings, acme_dry_run=True)

        if settings.acme_dry_run:
            logger.warning("=" * 60)
            logger.warning("DRY-RUN MODE ENABLED")
            logger.warning("  - Using ACME staging environment")
            logger.warning("  - Certificates will NOT be trusted by browsers")
            logger.warning("  - Use for testing only")
            logger.warning("=" * 60)

        return COMMANDS[args.command](settings, args)

    except exceptions.PostIssuancePersistenceFailure as e:
        logger.critical(str(e))
        logger.critical(
            f"Certificate {e.certificate_id} exists at the CA but is not stored. "
            "Do not request it again; re-save the material from the failure."
        )
        return EXIT_NOT_PERSISTED
    except (exceptions.CertManagerError, ValueError) as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("\nOperation cancelled by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
