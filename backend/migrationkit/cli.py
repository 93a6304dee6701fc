#!/usr/bin/env python3
"""
Console runner for the migration pipelines.

Exit codes: 0 success, 1 failure or fatal configuration error, 2 import
finished but some users or pages failed.
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as SettingsValidationError

from logconfig.logger import asyncio_exception_handler, get_logger, set_verbose
from migrationkit.core.factory import create_directory_client, create_object_storage, create_secret_provider
from migrationkit.core.settings import MigrationSettings, get_settings
from migrationkit.exceptions.base_exceptions import ConfigurationError
from migrationkit.models.run_summary import ExecutionResult
from migrationkit.services.jit.key_manager import RsaKeyManager
from migrationkit.services.migration.export_orchestrator import ExportOrchestrator
from migrationkit.services.migration.import_orchestrator import ImportOrchestrator
from migrationkit.services.telemetry.telemetry_service import LoggingTelemetryService

logger = get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2


def load_settings(config_path: Optional[str], verbose: bool) -> MigrationSettings:
    settings = MigrationSettings.from_json_file(config_path) if config_path else get_settings()
    if verbose:
        settings = settings.model_copy(update={"verbose_logging": True})
    return settings


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(asyncio_exception_handler)
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        loop.add_signal_handler(signal.SIGTERM, cancel_event.set)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl+C then stops the run outright.
        pass


async def run_export(settings: MigrationSettings) -> ExecutionResult:
    valid, errors = settings.validate_export_config()
    if not valid:
        raise ConfigurationError("Export configuration is invalid", errors=errors)

    cancel_event = asyncio.Event()
    _install_cancel_handler(cancel_event)
    telemetry = LoggingTelemetryService()
    secret_provider = create_secret_provider(settings)
    storage = create_object_storage(settings)
    try:
        client = await create_directory_client(settings.source, settings, telemetry, secret_provider, name="source")
        async with client:
            result = await ExportOrchestrator(client, storage, settings, telemetry).execute(cancel_event)
        await client.credential_pool.close()
        return result
    finally:
        await storage.close()
        await secret_provider.close()


async def run_import(settings: MigrationSettings) -> ExecutionResult:
    valid, errors = settings.validate_import_config()
    if not valid:
        raise ConfigurationError("Import configuration is invalid", errors=errors)

    cancel_event = asyncio.Event()
    _install_cancel_handler(cancel_event)
    telemetry = LoggingTelemetryService()
    secret_provider = create_secret_provider(settings)
    storage = create_object_storage(settings)
    try:
        client = await create_directory_client(settings.target, settings, telemetry, secret_provider, name="target")
        async with client:
            orchestrator = ImportOrchestrator(client, storage, settings, telemetry)
            result = await orchestrator.execute(cancel_event)
        await client.credential_pool.close()
        return result
    finally:
        await storage.close()
        await secret_provider.close()


def exit_code_for(result: ExecutionResult) -> int:
    if result.success:
        return EXIT_OK
    summary = result.summary
    if result.exception is None and not result.cancelled and summary and summary.success_count + summary.skipped_count > 0:
        return EXIT_PARTIAL
    return EXIT_FAILURE


def print_result(name: str, result: ExecutionResult) -> None:
    status = "SUCCEEDED" if result.success else "FAILED"
    print(f"\n{name} {status} in {result.duration_seconds:.1f}s")
    if result.summary:
        print(f"  {result.summary}")
    if result.error_message:
        print(f"  Error: {result.error_message}")


def validate_configuration(settings: MigrationSettings, json_output: bool = False) -> bool:
    is_valid, report = settings.validate_all_configurations()
    if json_output:
        print(json.dumps(report, indent=2, default=str))
        return is_valid

    print("Validating migration configuration...")
    for section in ("export", "import", "jit"):
        entry = report[section]
        print(f"  {'OK  ' if entry['valid'] else 'FAIL'} {section}")
        for error in entry["errors"]:
            print(f"       - {error}")
    for warning in report.get("warnings", []):
        print(f"  WARN {warning}")
    return is_valid


def generate_keys(out_dir: str, key_size: int) -> None:
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    private_pem, public_pem = RsaKeyManager.generate_key_pair(key_size)
    (target / "jit_private_key.pem").write_text(private_pem, encoding="utf-8")
    (target / "jit_public_key.pem").write_text(public_pem, encoding="utf-8")
    (target / "jit_public_key.jwk.json").write_text(RsaKeyManager.export_public_key_jwk_json(public_pem), encoding="utf-8")
    print(f"Wrote JIT key pair to {target.resolve()}")
    print("Store jit_private_key.pem in the secret store; register the JWK on the authentication extension.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="migrationkit",
        description="Identity migration: export source users, import them into the target tenant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  migrationkit export --config appsettings.json
  migrationkit import --config appsettings.json --verbose
  migrationkit validate-config --json
  migrationkit generate-keys --out-dir ./keys
        """,
    )
    parser.add_argument("--config", "-c", help="JSON settings file (defaults to environment / .env)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("export", help="Export source users to object storage")
    commands.add_parser("import", help="Import exported users into the target tenant")
    validate = commands.add_parser("validate-config", help="Check configuration for every pipeline")
    validate.add_argument("--json", "-j", action="store_true", help="Output the report as JSON")
    keys = commands.add_parser("generate-keys", help="Generate an RSA key pair for the JIT envelope")
    keys.add_argument("--out-dir", default=".", help="Directory for the key files")
    keys.add_argument("--key-size", type=int, default=2048, choices=(2048, 4096))
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)

    try:
        if args.command == "generate-keys":
            generate_keys(args.out_dir, args.key_size)
            return EXIT_OK

        settings = load_settings(args.config, args.verbose)

        if args.command == "validate-config":
            return EXIT_OK if validate_configuration(settings, args.json) else EXIT_FAILURE

        if args.command == "export":
            result = asyncio.run(run_export(settings))
            print_result("Export", result)
        else:
            result = asyncio.run(run_import(settings))
            print_result("Import", result)
        return exit_code_for(result)

    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e.message}")
        for error in e.errors:
            logger.critical(f"  - {error}")
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except (SettingsValidationError, OSError) as e:
        logger.critical(f"Could not load settings: {e}")
        print(f"Could not load settings: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
