"""Rich console output and markdown file save for panel outcomes."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from expert_panel.publisher import ConsensusOutcome, SingularOutcome

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _omission_line(outcome: ConsensusOutcome | SingularOutcome) -> str:
    if not outcome.omitted:
        return ""
    return "Omitted: " + ", ".join(f"{o.expert_id} ({o.failure_reason})" for o in outcome.omitted)


def print_consensus(outcome: ConsensusOutcome) -> None:
    """Print the consensus answer and its reasoning using Rich markdown."""
    result = outcome.result
    console.print(Rule("[bold green]Panel Consensus[/bold green]"))
    style = "dim" if result.threshold_met else "bold yellow"
    console.print(
        Text(
            f"Method: {result.method} | "
            f"Confidence: {result.confidence:.0%} (threshold {result.threshold:.0%}) | "
            f"Experts: {len(result.contributing_experts)} | "
            f"Latency: {outcome.latency_ms:.0f}ms",
            style=style,
        )
    )
    console.print(Markdown(result.final_text))
    console.print(Panel(Text(result.reasoning), title="[bold]Reasoning[/bold]", border_style="dim"))
    omitted = _omission_line(outcome)
    if omitted:
        console.print(Text(omitted, style="yellow"))


def print_singular(outcome: SingularOutcome) -> None:
    """Print each expert's independent answer in its own panel."""
    console.print(Rule("[bold cyan]Independent Expert Views[/bold cyan]"))
    for resp in outcome.responses:
        console.print(
            Panel(
                Markdown(resp.text),
                title=f"[bold]{resp.display_name}[/bold] ({resp.expert_id})",
                subtitle=f"confidence {resp.confidence:.0%} | {resp.latency_ms:.0f}ms",
                border_style="dim",
            )
        )
    omitted = _omission_line(outcome)
    if omitted:
        console.print(Text(omitted, style="yellow"))


def print_outcome(outcome: ConsensusOutcome | SingularOutcome) -> None:
    if isinstance(outcome, ConsensusOutcome):
        print_consensus(outcome)
    else:
        print_singular(outcome)


def save_to_file(
    outcome: ConsensusOutcome | SingularOutcome,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save the outcome as a markdown file.

    Args:
        outcome: The published outcome.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the prompt. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(outcome.prompt)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# Expert Panel: {outcome.prompt[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Request:** {outcome.request_id}",
        f"**Mode:** {outcome.mode}",
        f"**Latency:** {outcome.latency_ms:.0f}ms",
    ]

    if isinstance(outcome, ConsensusOutcome):
        result = outcome.result
        lines.append(f"**Method:** {result.method}")
        if outcome.strategy:
            lines.append(f"**Weighting:** {outcome.strategy}")
        lines += [
            f"**Confidence:** {result.confidence:.0%} "
            f"(threshold {result.threshold:.0%}, {'met' if result.threshold_met else 'NOT met'})",
            "",
            "---",
            "",
            result.final_text,
            "",
            "## Reasoning",
            "",
            result.reasoning,
            "",
        ]
    else:
        lines += ["", "---", ""]
        for resp in outcome.responses:
            lines += [
                f"## {resp.display_name} ({resp.expert_id})",
                "",
                resp.text,
                "",
                f"*Confidence: {resp.confidence:.0%} | Latency: {resp.latency_ms:.0f}ms*",
                "",
            ]

    if outcome.omitted:
        lines += ["## Omitted Experts", ""]
        lines += [f"- {o.expert_id}: {o.failure_reason}" for o in outcome.omitted]
        lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Outcome saved to: %s", filepath)
    return filepath
