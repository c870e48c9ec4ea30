"""CLI entrypoint for ESU license provisioning."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv

from .assignment import CommandAssigner, LicenseAssigner, NoopAssigner
from .auth import AuthError, ClientCredentialProvider
from .config import LicensingConfig, load_config
from .licenses import LicenseUpsertClient, UpsertError
from .models import BatchReport, InputRow
from .rows import load_rows
from .runner import BatchRunner
from .tasks import RowTask
from .validation import ValidationError, Violation, ensure_valid, validate_rows

EXIT_ROW_FAILURES = 1
EXIT_VALIDATION = 2


def _configure_logging() -> None:
    env_level = os.getenv("ESU_LICENSING_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, env_level, None)
    if not isinstance(level, int):
        level = logging.INFO
        logging.warning(
            "Unrecognized ESU_LICENSING_LOG_LEVEL '%s'; defaulting to INFO",
            env_level,
        )
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")


load_dotenv(override=False)
_configure_logging()

app = typer.Typer(help="Bulk provisioning of Azure Arc ESU licenses")

ConfigOption = typer.Option(..., exists=True, readable=True, help="Path to licensing config YAML")


def _fail_validation(violations: List[Violation]) -> None:
    for violation in violations:
        typer.secho(f"  - {violation}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=EXIT_VALIDATION)


def _load_config(config_path: Path) -> LicensingConfig:
    try:
        return load_config(config_path)
    except ValueError as exc:  # pydantic.ValidationError is a ValueError
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_VALIDATION) from exc


def _preflight(config_path: Path, csv_path: Path) -> tuple[LicensingConfig, List[InputRow]]:
    """Load and validate everything the batch needs; no network activity."""

    config = _load_config(config_path)
    violations = config.violations()
    if violations:
        typer.secho("Invalid run parameters:", fg=typer.colors.RED, err=True)
        _fail_validation(violations)

    try:
        rows = load_rows(csv_path)
        ensure_valid(validate_rows(rows, config.base_spec(), config.license.name_template))
    except ValidationError as exc:
        typer.secho("Invalid input rows:", fg=typer.colors.RED, err=True)
        _fail_validation(exc.violations)
    return config, rows


def build_runner(
    config: LicensingConfig,
    max_workers: Optional[int] = None,
    batch_timeout: Optional[float] = None,
) -> BatchRunner:
    """Wire the shared, read-only collaborators for one run."""

    tokens = ClientCredentialProvider(
        config.credentials(),
        authority=config.azure.authority_url,
        timeout=config.runner.token_timeout,
        cache=config.runner.cache_tokens,
    )
    client = LicenseUpsertClient(
        management_url=config.azure.management_url,
        timeout=config.runner.request_timeout,
        tags=config.license.tags,
    )
    assigner: LicenseAssigner
    if config.assignment.command:
        assigner = CommandAssigner(config.assignment.command, timeout=config.assignment.timeout)
    else:
        assigner = NoopAssigner()
    task = RowTask(
        tokens,
        client,
        assigner,
        config.base_spec(),
        license_name_template=config.license.name_template,
        assign_after_failed_upsert=config.assignment.run_after_failed_upsert,
    )
    return BatchRunner(
        task,
        max_workers=max_workers or config.runner.max_workers,
        batch_timeout=batch_timeout or config.runner.batch_timeout,
        auth_failure_threshold=config.runner.auth_failure_threshold,
    )


def _print_report(report: BatchReport) -> None:
    for result in report.results:
        if result.succeeded:
            typer.secho(f"OK    {result.row.server_name} -> {result.license_name}", fg=typer.colors.GREEN)
        else:
            typer.secho(
                f"FAIL  {result.row.server_name} [{result.stage.value}] {result.error}",
                fg=typer.colors.RED,
            )
    typer.echo(
        f"{len(report.succeeded)} succeeded, {len(report.failed)} failed, {len(report.results)} total"
    )
    if report.aborted_reason:
        typer.secho(f"Batch aborted: {report.aborted_reason}", fg=typer.colors.YELLOW, err=True)


@app.command("provision")
def provision(
    csv_path: Path = typer.Argument(..., exists=True, readable=True, help="Server CSV export"),
    config: Path = ConfigOption,
    max_workers: Optional[int] = typer.Option(None, min=1, help="Override runner.max_workers"),
    batch_timeout: Optional[float] = typer.Option(None, min=1, help="Override runner.batch_timeout (seconds)"),
    as_json: bool = typer.Option(False, "--json", help="Emit the batch report as JSON"),
) -> None:
    """Upsert the license and assign it to every server in the CSV."""

    licensing_config, rows = _preflight(config, csv_path)
    runner = build_runner(licensing_config, max_workers=max_workers, batch_timeout=batch_timeout)
    report = runner.run(rows)

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)

    if report.exit_code:
        raise typer.Exit(code=EXIT_ROW_FAILURES)


@app.command("validate")
def validate(
    csv_path: Path = typer.Argument(..., exists=True, readable=True, help="Server CSV export"),
    config: Path = ConfigOption,
) -> None:
    """Check the configuration and CSV without calling Azure."""

    _, rows = _preflight(config, csv_path)
    typer.echo(f"Configuration and {len(rows)} row(s) are valid")


@app.command("show")
def show(
    config: Path = ConfigOption,
    license_name: Optional[str] = typer.Option(None, help="License to fetch; defaults to license.license_name"),
) -> None:
    """Print the current state of a license resource."""

    licensing_config = _load_config(config)
    violations = licensing_config.violations()
    if violations:
        _fail_validation(violations)

    spec = licensing_config.base_spec()
    if license_name:
        spec = spec.with_overrides(license_name=license_name)
    tokens = ClientCredentialProvider(
        licensing_config.credentials(),
        authority=licensing_config.azure.authority_url,
        timeout=licensing_config.runner.token_timeout,
    )
    client = LicenseUpsertClient(
        management_url=licensing_config.azure.management_url,
        timeout=licensing_config.runner.request_timeout,
    )
    try:
        resource = client.get(tokens.get_token(), spec)
    except (AuthError, UpsertError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_ROW_FAILURES) from exc

    if resource is None:
        typer.secho(f"License '{spec.license_name}' not found", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=EXIT_ROW_FAILURES)
    typer.echo(json.dumps(resource, indent=2))


if __name__ == "__main__":
    app()
