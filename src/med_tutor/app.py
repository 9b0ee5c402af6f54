"""Interactive CLI application."""
import time
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from med_tutor.bands import LEVEL_BANDS
from med_tutor.catalog import load_catalog
from med_tutor.config import get_settings
from med_tutor.db import ProfileStore
from med_tutor.engine import ProgressionService
from med_tutor.errors import EngineError, PersistenceError
from med_tutor.grading import grade_item
from med_tutor.models import (
    ContentType,
    DailyMix,
    DomainState,
    GradedItem,
    MixItem,
    SessionOutcome,
)

console = Console()

EXIT_WORDS = ("q", "menu")
XP_PER_CORRECT = 10

STATE_COLORS = {
    DomainState.NOT_STARTED: "dim",
    DomainState.IN_PROGRESS: "cyan",
    DomainState.GATE_PENDING: "yellow",
    DomainState.COMPLETED: "green",
}


class SessionExitRequested(Exception):
    """Raised when the learner types q or menu in the middle of a session."""


def session_prompt(prompt: str, **kwargs) -> str:
    answer = Prompt.ask(prompt, **kwargs)
    if answer.strip().lower() in EXIT_WORDS:
        raise SessionExitRequested()
    return answer


def session_int_prompt(prompt: str, choices: list[str]) -> int:
    answer = session_prompt(prompt, choices=choices + list(EXIT_WORDS), show_choices=False)
    return int(answer)


def show_welcome():
    console.print(Panel(
        "[bold]Adaptive Clinical Training[/bold]\n[dim]Daily mix, spaced repetition and domain gates[/dim]",
        title="Welcome", border_style="blue",
    ))


def show_menu():
    console.print("\n[bold]Commands:[/bold]")
    commands = [
        ("mix", "Show today's plan"),
        ("study", "Work through today's plan"),
        ("status", "Band, recovery and domain gates"),
        ("osce", "Submit a Mini-OSCE for a gate-pending domain"),
        ("recovery", "Ask for an easier day"),
        ("quit", "Exit"),
    ]
    for cmd, desc in commands:
        console.print(f"  [cyan]{cmd:<14}[/cyan] {desc}")


def show_mix(mix: DailyMix) -> None:
    title = f"Daily Mix {mix.date.isoformat()} - band {mix.target_band.value}"
    if mix.is_recovery_day:
        title += " (recovery day)"
    table = Table(title=title)
    table.add_column("Bucket", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Minutes", justify="right")
    table.add_column("Why")
    for name, bucket in (
        ("New", mix.new_content),
        ("Interleaving", mix.interleaving_content),
        ("Reviews", mix.srs_reviews),
    ):
        table.add_row(name, str(len(bucket.items)), f"{bucket.estimated_time_minutes:.0f}", bucket.reasoning)
    console.print(table)
    console.print(f"  Total: [bold]{mix.total_estimated_minutes:.0f} min[/bold]")
    if mix.weak_domains:
        weak = ", ".join(f"{w.domain} ({w.accuracy:.0%})" for w in mix.weak_domains)
        console.print(f"  [yellow]Weak domains: {weak}[/yellow]")


def grade_mix_item(service: ProgressionService, item: MixItem, index: int, total: int) -> GradedItem:
    """Present one item and turn the learner's answer into a graded item."""
    content = service.catalog.get_item_by_id(item.content_id)
    label = f"{item.content_type.value} {index}/{total}"
    if item.needs_focused_review:
        label += " [red]needs focused review[/red]"
    console.print(Panel(content.title or item.content_id, title=label, border_style="cyan"))

    started = time.monotonic()
    if item.content_type == ContentType.MICRO_CASE:
        rating = session_int_prompt(
            "Rate your management (0=missed it, 3=hard, 5=confident)", [str(n) for n in range(6)]
        )
        elapsed = time.monotonic() - started
        hints = session_int_prompt("Hints used", [str(n) for n in range(6)])
        grade = grade_item(content, self_assessment=rating, hints_used=hints, settings=service.settings)
    else:
        answer = session_prompt("Correct? (y/n)", choices=["y", "n"], show_choices=False)
        elapsed = time.monotonic() - started
        hints = session_int_prompt("Hints used", [str(n) for n in range(6)])
        grade = grade_item(
            content, correct=answer == "y", time_spent_seconds=elapsed,
            hints_used=hints, settings=service.settings,
        )
    console.print(f"[dim]Grade {grade}[/dim]\n")
    return GradedItem(
        grade=grade, time_spent_seconds=round(elapsed, 1), hints_used=hints,
        card_id=item.card_id, content_id=item.content_id,
    )


def record_graded(service: ProgressionService, learner_id: str, graded: dict[str, list[GradedItem]]) -> None:
    """Record one session per domain for whatever was graded."""
    now = datetime.now()
    for domain, items in graded.items():
        if not items:
            continue
        xp = XP_PER_CORRECT * sum(1 for g in items if g.grade >= 3)
        try:
            report = service.record_session(
                learner_id, SessionOutcome(domain=domain, items_graded=items, xp_earned=xp, completed_at=now)
            )
        except PersistenceError as e:
            console.print(f"[red]Could not save progress for {domain}: {e}. It will be retried.[/red]")
            continue
        if report.band_transition:
            t = report.band_transition
            console.print(f"[bold]Band {t.from_band.value} -> {t.to_band.value}[/bold] ({t.reason})")
        for event in report.domain_events:
            console.print(f"[green]{event}[/green]")
        if report.recovery_changed:
            state = "on" if report.profile.recovery.active else "off"
            console.print(f"[yellow]Recovery mode {state}[/yellow]")


def run_mix_session(service: ProgressionService, learner_id: str, items: list[MixItem]) -> int:
    """Grade items in order. Work done before a q/menu exit is still recorded."""
    if not items:
        console.print("[yellow]Nothing to study right now![/yellow]")
        return 0
    graded: dict[str, list[GradedItem]] = {}
    try:
        for i, item in enumerate(items, 1):
            graded.setdefault(item.domain, []).append(grade_mix_item(service, item, i, len(items)))
    finally:
        record_graded(service, learner_id, graded)
    return sum(len(g) for g in graded.values())


def cmd_mix(service: ProgressionService, learner_id: str) -> DailyMix:
    if service.pending.get(learner_id):
        saved = service.flush_pending(learner_id)
        if saved:
            console.print(f"[green]Saved {saved} earlier session(s).[/green]")
    for outcome, played_at, reason in service.rejected.pop(learner_id, []):
        console.print(
            f"[red]A {outcome.domain} session from {played_at:%Y-%m-%d %H:%M} "
            f"could not be applied: {reason}[/red]"
        )
    profile = service.store.load(learner_id)
    profile, mix = service.todays_mix(profile, learner_id)
    service.save(profile)
    show_mix(mix)
    return mix


def cmd_study(service: ProgressionService, learner_id: str):
    mix = cmd_mix(service, learner_id)
    items = mix.srs_reviews.items + mix.new_content.items + mix.interleaving_content.items
    done = run_mix_session(service, learner_id, items)
    if done:
        console.print(f"[green]Session done: {done} item(s) graded.[/green]")


def cmd_status(service: ProgressionService, learner_id: str):
    profile = service.store.load(learner_id)
    recovery = "[yellow]on[/yellow]" if profile.recovery.active else "off"
    console.print(Panel(
        f"Band [bold]{profile.band.current_band.value}[/bold]  |  Recovery {recovery}  |  "
        f"XP [bold]{profile.xp}[/bold]\nPrimary domain: [cyan]{profile.primary_domain}[/cyan]",
        title=f"Learner {profile.learner_id}", border_style="blue",
    ))
    table = Table(title="Domain Gates")
    table.add_column("Domain", style="cyan")
    table.add_column("Status")
    table.add_column("Mean stability", justify="right")
    table.add_column("Mini-OSCE", justify="right")
    for status in profile.domains.values():
        color = STATE_COLORS[status.status]
        gp = status.gate_progress
        table.add_row(
            status.domain,
            f"[{color}]{status.status.value}[/{color}]",
            "-" if gp.mean_stability is None else f"{gp.mean_stability:.1f}",
            "-" if gp.mini_osce_score is None else f"{gp.mini_osce_score:.0%}",
        )
    console.print(table)
    leeches = [c for c in profile.cards.values() if c.is_leech and not c.retired]
    if leeches:
        console.print(f"\n  [red]{len(leeches)} card(s) need focused review[/red]")


def cmd_osce(service: ProgressionService, learner_id: str):
    profile = service.store.load(learner_id)
    pending = [d for d, s in profile.domains.items() if s.status == DomainState.GATE_PENDING]
    if not pending:
        console.print("[yellow]No domain is waiting for a Mini-OSCE.[/yellow]")
        return
    domain = Prompt.ask("Domain", choices=pending)
    count = int(Prompt.ask("Number of rubric criteria", default="5"))
    scores = [
        {"criterion_id": f"c{n}", "score": int(Prompt.ask(f"Criterion {n} score", choices=["0", "1", "2"]))}
        for n in range(1, count + 1)
    ]
    profile, result = service.submit_mini_osce(profile, learner_id, domain, scores)
    service.save(profile)
    color = "green" if result.passed else "red"
    console.print(f"[{color}]Mini-OSCE {result.percentage:.0%} ({'passed' if result.passed else 'not passed'})[/{color}]")
    console.print(f"{domain} is now [bold]{profile.domains[domain].status.value}[/bold]")


def cmd_recovery(service: ProgressionService, learner_id: str):
    profile = service.store.load(learner_id)
    if profile.recovery.active:
        console.print("[dim]Recovery mode is already on.[/dim]")
        return
    if not Confirm.ask("Switch to an easier recovery day?"):
        return
    service.save(service.request_recovery(profile, learner_id))
    console.print("[green]Recovery mode on. Today's mix will be easier.[/green]")


def main():
    settings = get_settings()
    catalog = load_catalog()
    store = ProfileStore(settings.db_path, settings.save_retries, settings.save_backoff_seconds)
    service = ProgressionService(catalog, settings, store)
    learner_id = settings.learner_id

    if store.load(learner_id) is None:
        console.print("[dim]Setting up for first use...[/dim]")
        domain = Prompt.ask("Primary domain", choices=catalog.domains())
        level = Prompt.ask("Training level", choices=list(LEVEL_BANDS), default="st1")
        service.load_or_create(learner_id, domain, level)
        console.print("[green]Ready![/green]\n")

    show_welcome()

    while True:
        show_menu()
        choice = Prompt.ask("\n[bold]>[/bold]", default="mix").strip().lower()
        try:
            if choice == "mix":
                cmd_mix(service, learner_id)
            elif choice == "study":
                cmd_study(service, learner_id)
            elif choice == "status":
                cmd_status(service, learner_id)
            elif choice == "osce":
                cmd_osce(service, learner_id)
            elif choice == "recovery":
                cmd_recovery(service, learner_id)
            elif choice in ("quit", "exit", "q"):
                pending = sum(len(v) for v in service.pending.values())
                if pending:
                    console.print(f"[yellow]{pending} session(s) could not be saved.[/yellow]")
                console.print("[dim]See you tomorrow![/dim]")
                break
            else:
                console.print("[red]Unknown command. Try again.[/red]")
        except SessionExitRequested:
            console.print("\n[dim]Back to menu. Progress so far was saved.[/dim]")
        except KeyboardInterrupt:
            console.print("\n[dim]Use 'quit' to exit.[/dim]")
        except EngineError as e:
            console.print(f"[red]Error: {e}[/red]")


if __name__ == "__main__":
    main()
