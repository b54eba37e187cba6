"""Click CLI: orchestrates config loading, provider selection, panel run, and output."""

import asyncio
import dataclasses
import json
import logging
import sys
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from expert_panel.engine import ExpertPanelEngine, build_engine
from expert_panel.errors import AllExpertsFailed, InvalidRequest
from expert_panel.healthcheck import run_health_checks
from expert_panel.inbox import archive_file, ensure_dirs, request_from_file, scan_inbox
from expert_panel.models import AUTO, CONSENSUS, SINGULAR, Request
from expert_panel.output import print_outcome, save_to_file
from expert_panel.providers.anthropic import AnthropicProvider
from expert_panel.providers.base import ReasoningProvider
from expert_panel.providers.gemini import GeminiProvider
from expert_panel.providers.openai_provider import OpenAIProvider
from expert_panel.providers.simulated import SimulatedProvider

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# keyed by the "sdk" field of a model config
PROVIDER_CLASSES: dict[str, type[ReasoningProvider]] = {
    "simulated": SimulatedProvider,
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google-genai": GeminiProvider,
}

OFFLINE_PROVIDER = "simulated"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, ReasoningProvider]:
    """Build all available providers. Returns dict keyed by model config name."""
    providers: dict[str, ReasoningProvider] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            logging.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(model_cfg, config.prompts)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _force_offline(config: AppConfig) -> AppConfig:
    """Route every expert to the simulated provider."""
    if OFFLINE_PROVIDER not in config.models:
        raise click.ClickException(f"--offline needs a '{OFFLINE_PROVIDER}' entry under models in settings.yaml")
    experts = [dataclasses.replace(e, provider=OFFLINE_PROVIDER) for e in config.experts]
    return dataclasses.replace(config, experts=experts, available_providers={OFFLINE_PROVIDER})


def _warn_unserved_experts(config: AppConfig, providers: dict[str, ReasoningProvider]) -> None:
    unserved = [e.id for e in config.experts if e.provider not in providers]
    if unserved:
        console.print(
            f"[yellow]Warning:[/yellow] no working provider for {', '.join(unserved)}; "
            "they will be reported as omitted. Use --offline to simulate them."
        )


def _check_and_filter_providers(all_providers: dict[str, ReasoningProvider]) -> dict[str, ReasoningProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(all_providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(
        f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print(f"Working providers: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _build_request(
    prompt: str,
    mode: str,
    capabilities: tuple[str, ...],
    threshold: float,
    strategy: str | None,
    hybrid: bool,
) -> Request:
    return Request(
        id=uuid.uuid4().hex[:12],
        prompt=prompt,
        requested_mode=mode,
        consensus_threshold=threshold,
        required_capabilities=frozenset(capabilities),
        weighting_strategy=strategy,
        resolution="hybrid" if hybrid else "weighted",
    )


async def _run_single(
    engine: ExpertPanelEngine,
    request: Request,
    trigger: str | None,
    output_dir: Path,
    as_json: bool,
    slug_override: str | None = None,
) -> Path:
    """Run one request, render it, and return the saved output path."""
    if not as_json:
        excerpt = request.prompt[:80] + ("..." if len(request.prompt) > 80 else "")
        console.print(
            f"\n[bold cyan]Expert Panel[/bold cyan]: {len(engine.registry)} experts, "
            f"mode {request.requested_mode}" + (f" (trigger {trigger})" if trigger else "")
        )
        console.print(f"Prompt: [italic]{excerpt}[/italic]\n")

    outcome = await engine.handle(request, trigger)

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
    else:
        print_outcome(outcome)

    saved_path = save_to_file(outcome, output_dir, slug_override=slug_override)
    if not as_json:
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


async def _run_inbox(
    engine: ExpertPanelEngine,
    inbox_dir: Path,
    archive_dir: Path,
    output_dir: Path,
    as_json: bool,
) -> None:
    """Process all .md files in the inbox folder, oldest first."""
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    for file_path in files:
        try:
            request, event = request_from_file(file_path)
            saved = await _run_single(
                engine=engine,
                request=request,
                trigger=event,
                output_dir=output_dir,
                as_json=as_json,
                slug_override=file_path.stem,
            )
            archived = archive_file(file_path, archive_dir)
            click.echo(f"Processed: {file_path.name} -> {saved} (archived: {archived.name})")
        except Exception as e:
            logger.error("Failed: %s -- %s", file_path.name, e)
            archive_file(file_path, archive_dir, failed=True)


@click.command()
@click.argument("prompt", required=False)
@click.option("--file", "prompt_file", type=click.Path(exists=True), help="Read prompt from .md file")
@click.option("--mode", type=click.Choice([AUTO, CONSENSUS, SINGULAR]), default=AUTO, show_default=True,
              help="consensus: one synthesized answer; singular: independent views; auto: follow --trigger")
@click.option("--trigger", default=None, help="Event kind that caused the request, e.g. file-save, issue-created")
@click.option("--capability", "capabilities", multiple=True, help="Required expert capability (repeatable)")
@click.option("--threshold", default=0.7, type=float, show_default=True, help="Consensus confidence threshold")
@click.option("--strategy", default=None, help="Weighting strategy override (balanced, quality_focused, ...)")
@click.option("--hybrid", is_flag=True, help="Combine weighted and majority resolution")
@click.option("--offline", is_flag=True, help="Route every expert to the simulated provider")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--inbox", "use_inbox", is_flag=True, default=False,
              help="Process all .md files in inbox folder")
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the provider connectivity check at startup")
def main(
    prompt: str | None,
    prompt_file: str | None,
    mode: str,
    trigger: str | None,
    capabilities: tuple[str, ...],
    threshold: float,
    strategy: str | None,
    hybrid: bool,
    offline: bool,
    as_json: bool,
    output_path: str | None,
    verbose: bool,
    use_inbox: bool,
    inbox_dir_override: str | None,
    skip_health_check: bool,
) -> None:
    """Expert Panel -- multi-expert consensus and independent review.

    \b
    Examples:
      expert-panel "Should the payment client retry on 503?" --offline
      expert-panel "Plan the auth migration" --trigger issue-created
      expert-panel "Refactor the cache layer" --mode consensus --capability testing
      expert-panel --file request.md --threshold 0.9 --hybrid
      expert-panel --inbox --inbox-dir ./my_queue
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if offline:
        config = _force_offline(config)

    effective_output = Path(output_path) if output_path else config.output_dir

    all_providers = _build_all_providers(config)

    if not all_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env or use --offline.")
        sys.exit(1)

    if not skip_health_check and not offline:
        all_providers = _check_and_filter_providers(all_providers)

    _warn_unserved_experts(config, all_providers)
    engine = build_engine(config, all_providers)

    if use_inbox:
        inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.inbox.dir
        asyncio.run(
            _run_inbox(
                engine=engine,
                inbox_dir=inbox_dir,
                archive_dir=config.inbox.archive_dir,
                output_dir=effective_output,
                as_json=as_json,
            )
        )
        return

    if prompt_file:
        prompt_text = Path(prompt_file).read_text(encoding="utf-8").strip()
    elif prompt:
        prompt_text = prompt
    else:
        console.print("[bold red]Error:[/bold red] Provide a PROMPT argument, --file, or --inbox.")
        sys.exit(1)

    request = _build_request(prompt_text, mode, capabilities, threshold, strategy, hybrid)
    try:
        asyncio.run(
            _run_single(
                engine=engine,
                request=request,
                trigger=trigger,
                output_dir=effective_output,
                as_json=as_json,
            )
        )
    except InvalidRequest as exc:
        console.print(f"[bold red]Invalid request:[/bold red] {exc}")
        sys.exit(2)
    except AllExpertsFailed as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
