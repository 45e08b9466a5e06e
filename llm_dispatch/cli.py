#!/usr/bin/env python3
"""Operator console: send messages through the engine and flip policy switches."""

import asyncio
import logging
import sys
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from llm_dispatch.dispatch.controller import DispatchController
from llm_dispatch.models import ChatRequest, DispatchResult, FailureClass, PlanTier
from llm_dispatch.resilience.quota_store import RedisQuotaStore
from llm_dispatch.resilience.redis_client import RedisConnection
from llm_dispatch.settings import Settings, load_settings
from llm_dispatch.simulation import ScriptedExecutor, StaticBudgetSource

# Force UTF-8 encoding on Windows
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

console = Console(force_terminal=True)

CLI_USER = "cli-user"

HELP_TEXT = (
    "[cyan]/policy[/cyan]                  current policy flags\n"
    "[cyan]/set <flag> <value>[/cyan]      change a flag (lists comma-separated, 'none' clears)\n"
    "[cyan]/history[/cyan]                 policy change history\n"
    "[cyan]/circuits[/cyan]                circuit breaker states\n"
    "[cyan]/quota[/cyan]                   quota usage for this user\n"
    "[cyan]/fail <provider> <class> [n][/cyan]  script failures "
    "(provider_failure, model_refusal, budget_enforcement, orchestration_failure)\n"
    "[cyan]/plan <PLAN>[/cyan]             switch this user's plan\n"
    "[cyan]/reset[/cyan]                   reset policy, circuits, scripts and session\n"
    "[cyan]exit[/cyan]                     quit"
)


def configure_logging(settings: Settings) -> None:
    """Route engine logs through rich at the configured level."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
    )


LIST_FLAGS = {"disabled_providers", "disabled_families", "force_cheap_plans"}


def parse_flag_value(field: str, raw: str) -> Any:
    """Turn console text into a value pydantic can validate for a policy flag."""
    text = raw.strip()
    if field in LIST_FLAGS:
        if text.lower() in ("none", "null", "-", ""):
            return []
        items = [item.strip() for item in text.strip("[]").split(",") if item.strip()]
        if field == "force_cheap_plans":
            items = [item.upper() for item in items]
        return items
    if text.lower() in ("none", "null", ""):
        return None
    return text


def display_welcome(settings: Settings, plan: PlanTier) -> None:
    welcome = Panel(
        "[bold blue]LLM Dispatch Console[/bold blue]\n\n"
        "[green]Budget-aware routing with bounded recovery[/green]\n"
        f"[dim]Environment: {settings.app_env}[/dim]\n"
        f"[dim]Region: {settings.default_region.value} | Plan: {plan.value}[/dim]\n\n"
        "[dim]Type /help for commands, 'exit' to quit[/dim]",
        style="blue",
        padding=(1, 2),
    )
    console.print(welcome)
    console.print()


def render_result(result: DispatchResult) -> None:
    """Print a dispatch result with its routing metadata."""
    color = "green" if result.recovered else "red"
    lines = [
        f"[bold]{result.text}[/bold]",
        "",
        f"[dim]status={result.status.value} attempts={result.attempts_used} "
        f"providers={result.attempted_providers}[/dim]",
    ]
    if result.decision is not None:
        lines.append(
            f"[dim]route: {result.decision.reason} "
            f"(confidence={result.decision.confidence:.2f}, "
            f"level={result.decision.pressure_level.value})[/dim]"
        )
    if result.outcome is not None and not result.outcome.proceeds:
        lines.append(f"[dim]gate: {result.outcome.decision.value} {result.outcome.reason}[/dim]")
    if result.action:
        lines.append(f"[dim]action: {result.action}[/dim]")
    console.print(
        Panel("\n".join(lines), title=result.final_provider or "no provider", border_style=color)
    )


def show_policy(controller: DispatchController) -> None:
    status = controller.policy.status()
    table = Table(title="Policy Flags")
    table.add_column("Flag", style="cyan")
    table.add_column("Value")
    for name, value in status.flags.model_dump().items():
        if isinstance(value, (set, frozenset)):
            value = ", ".join(sorted(str(v.value if isinstance(v, PlanTier) else v) for v in value))
        table.add_row(name, str(value))
    console.print(table)
    active = ", ".join(status.active_kills) or "none"
    console.print(f"[magenta]Active kills:[/magenta] {active}")


def show_history(controller: DispatchController) -> None:
    table = Table(title="Policy History")
    for column in ("Version", "Action", "Field", "Old", "New", "By", "At"):
        table.add_column(column)
    for record in controller.policy.history(20):
        table.add_row(
            str(record.version),
            record.action,
            record.field,
            str(record.old_value),
            str(record.new_value),
            record.changed_by,
            record.changed_at.strftime("%H:%M:%S"),
        )
    console.print(table)


def show_circuits(controller: DispatchController, executor: ScriptedExecutor) -> None:
    states = controller.circuits.status()
    scripted = executor.pending()
    table = Table(title="Circuit Breakers")
    for column in ("Provider", "Status", "Failures", "Scripted"):
        table.add_column(column)
    for provider in controller.registry.all():
        state = states.get(provider.id)
        table.add_row(
            provider.id,
            state.status.value if state else "CLOSED",
            str(state.failure_count if state else 0),
            ", ".join(scripted.get(provider.id, [])),
        )
    console.print(table)


async def show_quota(
    controller: DispatchController, budget_source: StaticBudgetSource, settings: Settings
) -> None:
    budget = await budget_source.get_user_budget_state(CLI_USER)
    records = await controller.quota.usage_summary(CLI_USER, budget.plan, settings.default_region)
    table = Table(title=f"Quota ({budget.plan.value}, {records[0].period if records else ''})")
    for column in ("Provider", "Used", "Allocated", "Remaining", "Used %"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.provider_id,
            f"{record.used:,}",
            f"{record.allocated:,}",
            f"{record.remaining:,}",
            f"{record.percentage_used:.2f}",
        )
    console.print(table)
    console.print(
        f"[dim]monthly {budget.monthly_used:,}/{budget.monthly_limit:,}, "
        f"daily {budget.daily_used:,}/{budget.daily_limit:,}[/dim]"
    )


async def handle_command(
    command: str,
    controller: DispatchController,
    executor: ScriptedExecutor,
    budget_source: StaticBudgetSource,
    settings: Settings,
    session_id: str,
) -> bool:
    """Run one slash command. Returns True when the session should restart."""
    parts = command.split()
    name, args = parts[0].lower(), parts[1:]

    if name == "/help":
        console.print(Panel(HELP_TEXT, title="Commands", border_style="magenta"))
    elif name == "/policy":
        show_policy(controller)
    elif name == "/set":
        if len(args) < 2:
            console.print("[yellow]Usage: /set <flag> <value>[/yellow]")
            return False
        record = controller.policy.set(
            args[0], parse_flag_value(args[0], " ".join(args[1:])), changed_by="console"
        )
        if record is None:
            console.print("[dim]No change[/dim]")
        else:
            console.print(f"[green]{record.field}[/green]: {record.old_value} -> {record.new_value}")
    elif name == "/history":
        show_history(controller)
    elif name == "/circuits":
        show_circuits(controller, executor)
    elif name == "/quota":
        await show_quota(controller, budget_source, settings)
    elif name == "/fail":
        if len(args) < 2:
            console.print("[yellow]Usage: /fail <provider> <class> [times][/yellow]")
            return False
        if controller.registry.get(args[0]) is None:
            console.print(f"[red]Unknown provider: {args[0]}[/red]")
            return False
        failure = FailureClass(args[1].lower())
        times = int(args[2]) if len(args) > 2 else 1
        executor.fail(args[0], failure, times)
        console.print(f"[yellow]{args[0]} will fail {times}x with {failure.value}[/yellow]")
    elif name == "/plan":
        if not args:
            console.print("[yellow]Usage: /plan <PLAN>[/yellow]")
            return False
        plan = PlanTier(args[0].upper())
        budget_source.set(budget_source.default_state(CLI_USER, plan))
        controller.reset_session(session_id)
        console.print(f"[green]Plan set to {plan.value}[/green]")
    elif name == "/reset":
        controller.policy.reset(changed_by="console")
        controller.circuits.reset()
        controller.pressure_cache.reset_all()
        executor.clear()
        console.print("[green]Policy, circuits, scripts and session reset[/green]")
        return True
    else:
        console.print(f"[yellow]Unknown command {name}; try /help[/yellow]")
    return False


async def run_console() -> None:
    """Main conversation loop."""
    settings = load_settings()
    configure_logging(settings)

    executor = ScriptedExecutor(latency_seconds=0.05)
    budget_source = StaticBudgetSource(default_plan=PlanTier.STARTER)
    connection: Optional[RedisConnection] = None
    store = None
    if settings.redis_url:
        connection = RedisConnection(settings.redis_url, settings.redis_key_prefix)
        store = RedisQuotaStore(connection)

    controller = DispatchController.from_settings(
        settings, executor, budget_source=budget_source, store=store
    )
    budget = await budget_source.get_user_budget_state(CLI_USER)
    display_welcome(settings, budget.plan)

    session_number = 1
    session_id = f"cli-session-{session_number}"
    message_count = 0

    try:
        while True:
            try:
                user_input = Prompt.ask("[bold green]You").strip()

                if user_input.lower() in ["exit", "quit", "q"]:
                    break
                if not user_input:
                    continue
                if user_input.startswith("/"):
                    restart = await handle_command(
                        user_input, controller, executor, budget_source, settings, session_id
                    )
                    if restart:
                        session_number += 1
                        session_id = f"cli-session-{session_number}"
                        message_count = 0
                    continue

                request = ChatRequest(
                    user_id=CLI_USER,
                    session_id=session_id,
                    text=user_input,
                    region=settings.default_region,
                    session_message_count=message_count,
                )
                result = await controller.dispatch(request)
                message_count += 1
                render_result(result)

                if result.tokens_used:
                    current = await budget_source.get_user_budget_state(CLI_USER)
                    budget_source.set(
                        current.model_copy(
                            update={
                                "monthly_used": current.monthly_used + result.tokens_used,
                                "daily_used": current.daily_used + result.tokens_used,
                            }
                        )
                    )
                console.print()

            except KeyboardInterrupt:
                console.print("\n[yellow]Use 'exit' to quit[/yellow]")
                continue

            except ValueError as e:
                console.print(f"[red]Error: {e}[/red]")
                continue

    finally:
        await controller.drain()
        if connection is not None:
            await connection.close()
        console.print("\n[dim]Goodbye![/dim]")


def main() -> None:
    """Console-script entry point."""
    asyncio.run(run_console())


if __name__ == "__main__":
    main()
