# main.py
import asyncio
import sys
import questionary
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

from vibecurve.config import load_config, AppConfig
from vibecurve.errors import VibeCurveError
from vibecurve.logger import setup_console_logger
from vibecurve.orchestrator import Orchestrator

MODES = {
    "Alert only": (False, True, True),
    "Auto-execute (dry run)": (True, False, True),
    "Auto-execute (LIVE)": (True, False, False),
}

# --- UI HELPER FUNCTIONS ---

def startup_selection(config: AppConfig):
    """Interactive CLI to pick tokens, mode and an optional starter strategy."""
    print("\n🌊 VIBECURVE STRATEGY BOT \n")
    symbols = [t.symbol for t in config.tokens]
    chosen = questionary.checkbox("Select tokens to watch:", choices=symbols).ask()
    if not chosen:
        print("No tokens selected. Exiting.")
        sys.exit()
    config.tokens = [t for t in config.tokens if t.symbol in chosen]

    mode = questionary.select("Execution mode:", choices=list(MODES)).ask()
    if mode is None:
        sys.exit()
    auto_execute, alert_only, dry_run = MODES[mode]
    config.orchestrator.auto_execute = auto_execute
    config.orchestrator.alert_only = alert_only
    config.system.dry_run = dry_run

    plan = None
    if questionary.confirm("Start a DCA strategy as well?", default=False).ask():
        symbol = questionary.select("Token:", choices=chosen).ask()
        total = float(questionary.text("Total SOL:", default="0.1").ask())
        intervals = int(questionary.text("Intervals:", default="5").ask())
        every = float(questionary.text("Seconds between buys:", default="60").ask())
        plan = (symbol, total, {"intervals": intervals, "interval_seconds": every})
    return plan


def generate_dashboard(bot: Orchestrator):
    """
    Rich layout: live stats, recent opportunities and strategy progress.
    """
    stats = bot.get_stats().data or {}

    stats_table = Table(title="📊 Execution Stats")
    stats_table.add_column("Metric", style="cyan")
    stats_table.add_column("Value", justify="right", style="green")
    stats_table.add_row("Scans", str(stats.get('scan_count', 0)))
    stats_table.add_row("Executions", str(stats.get('total_executions', 0)))
    stats_table.add_row("Success rate", f"{stats.get('success_rate', 0.0):.0%}")
    stats_table.add_row("Net profit", f"{stats.get('net_profit', 0.0):+.6f} SOL")
    stats_table.add_row("Avg latency", f"{stats.get('avg_latency_ms', 0.0):.0f} ms")
    risk = stats.get('risk', {})
    stats_table.add_row("Open positions", str(risk.get('open_positions', 0)))
    stats_table.add_row("Drawdown", f"{risk.get('current_drawdown', 0.0):.1%}")

    opp_table = Table(title="💎 Recent Opportunities")
    opp_table.add_column("Token", style="magenta")
    opp_table.add_column("Route")
    opp_table.add_column("Spread", justify="right", style="green")
    opp_table.add_column("Conf.", justify="center")
    for opp in (bot.get_opportunities(limit=8).data or []):
        opp_table.add_row(opp.token.symbol, f"{opp.buy_venue} -> {opp.sell_venue}",
                          f"{opp.spread_pct:.2f}%", opp.confidence.value)

    strat_table = Table(title="🧭 Strategies")
    strat_table.add_column("Id", style="cyan")
    strat_table.add_column("State")
    strat_table.add_column("Progress", justify="right")
    strat_table.add_column("uPnL", justify="right")
    for row in (bot.list_strategies().data or []):
        status = row['status']
        strat_table.add_row(status.strategy_id, status.state.value, f"{status.progress:.0f}%",
                            f"{status.unrealized_pnl_pct:+.2f}%")

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(stats_table)),
        Layout(Panel(opp_table))
    )
    layout["bottom"].update(Panel(strat_table))
    return layout

# --- MAIN CONTROLLER ---

async def run(config: AppConfig, plan):
    logger = setup_console_logger("VibeCurve", config.system.log_level)
    try:
        bot = Orchestrator.from_config(config, logger)
    except VibeCurveError as e:
        print(f"❌ {e}")
        return

    try:
        await bot.start()
        if plan is not None:
            symbol, total, params = plan
            created = bot.create_strategy(symbol, total, "DCA", params)
            if not created.success:
                print(f"❌ Strategy rejected: {created.error}")
            else:
                started = await bot.start_strategy(created.data.id)
                if not started.success:
                    print(f"❌ Strategy failed to start: {started.error}")

        console = Console()
        with Live(console=console, refresh_per_second=2) as live:
            while bot.running:
                live.update(generate_dashboard(bot))
                await asyncio.sleep(0.5)
    finally:
        print("Shutting down resources...")
        await bot.close()


if __name__ == "__main__":
    cfg = load_config()
    try:
        starter = startup_selection(cfg)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(run(cfg, starter))
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
