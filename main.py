# main.py
import asyncio
import signal
import sys
import questionary
import yaml
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from arbloop.config import load_config
from arbloop.context import BotContext
from arbloop.engine import ArbitrageEngine
from arbloop.exceptions import ConfigError
from arbloop.feeds import STREAMS, StreamingFeed, VenuePollingFeed
from arbloop.logger import AuditTrail, setup_console_logger
from arbloop.models import OutcomeKind
from arbloop.price_cache import PriceCache
from arbloop.simulator import ExecutionSimulator
from arbloop.venues import CcxtVenue

# --- UI HELPER FUNCTIONS ---

def startup_selection(raw_config):
    """Interactive CLI to select markets and venues."""
    print("\n🔁 ARBLOOP CYCLE HUNTER \n")
    trading = raw_config.get('trading') or {}
    markets = questionary.checkbox("Select Markets to Watch:", choices=trading.get('assets', [])).ask()
    if not markets:
        print("No markets selected. Exiting.")
        sys.exit()

    avail_venues = list((raw_config.get('venues') or {}).keys())
    venues = questionary.checkbox("Select Venues to Activate:", choices=avail_venues).ask()
    if not venues or len(venues) < 2:
        print("Need at least 2 venues for arbitrage. Exiting.")
        sys.exit()
    return markets, venues


def generate_dashboard(engine: ArbitrageEngine):
    """
    Rich layout: live quotes, risk state, position usage, latest outcomes.
    """
    status = engine.status()

    # 1. Price Table
    prices = engine.prices()
    venues = sorted({v for quotes in prices.values() for v in quotes})
    price_table = Table(title="📡 Live Quotes")
    price_table.add_column("Market", style="cyan")
    for v in venues:
        price_table.add_column(v.upper(), justify="right", style="green")
    for symbol, quotes in prices.items():
        price_table.add_row(symbol, *[f"{quotes[v]:,.6g}" if v in quotes else "-" for v in venues])

    # 2. Risk Table
    risk = status['risk']
    eng = status['engine']
    risk_table = Table(title="🛡️ Risk State")
    risk_table.add_column("Metric", style="magenta")
    risk_table.add_column("Value", justify="right")
    risk_table.add_row("Trades today", str(risk['daily_trade_count']))
    risk_table.add_row("Daily profit", f"{risk['daily_profit']:,.4f}")
    risk_table.add_row("Daily loss", f"{risk['daily_loss']:,.4f}")
    risk_table.add_row("Total P&L", f"{risk['total_pnl']:+,.4f}")
    risk_table.add_row("Sharpe", f"{status['metrics']['sharpe_ratio']:.2f}")
    risk_table.add_row("Drawdown", f"{status['metrics']['max_drawdown'] * 100:.2f}%")
    risk_table.add_row("Cycles / Opps", f"{eng['cycles']} / {eng['opportunities']}")
    risk_table.add_row("Settled / Failed / Unbal.", f"{eng['settled']} / {eng['failed']} / {eng['unbalanced']}")

    # 3. Positions Table
    pos_table = Table(title="📦 Position Limits")
    pos_table.add_column("Asset", style="cyan")
    pos_table.add_column("Position", justify="right")
    pos_table.add_column("Daily Vol", justify="right")
    for asset, p in status['positions'].items():
        pos_table.add_row(asset, f"{p['current_position']:,.2f}/{p['max_position']:,.0f}",
                          f"{p['current_daily_volume']:,.2f}/{p['max_daily_volume']:,.0f}")

    # 4. Recent outcomes
    out_table = Table(title="⚡ Recent Executions")
    out_table.add_column("Id")
    out_table.add_column("Kind")
    out_table.add_column("P&L", justify="right")
    styles = {OutcomeKind.SETTLED: "green", OutcomeKind.FAILED: "yellow", OutcomeKind.UNBALANCED: "bold red"}
    for o in list(engine.recent_outcomes)[-5:]:
        out_table.add_row(o.opportunity.id, f"[{styles[o.kind]}]{o.kind.value}[/]", f"{o.realized_pnl:+.4f}")

    layout = Layout()
    layout.split_column(Layout(name="top"), Layout(name="middle"), Layout(name="bottom"))
    layout["top"].split_row(Layout(Panel(price_table)), Layout(Panel(risk_table)))
    layout["middle"].split_row(Layout(Panel(pos_table)), Layout(Panel(out_table)))

    if risk['emergency_stop']:
        footer = Panel(f"[bold]⛔ EMERGENCY STOP: {risk['emergency_reason']}[/bold]", style="white on red")
    elif eng['halted']:
        footer = Panel(f"[bold]⛔ HALTED: {eng['halt_reason']}[/bold]", style="white on red")
    else:
        mode = "DRY RUN" if engine.cfg.system.dry_run else "LIVE"
        footer = Panel(f"[bold gold1]{mode} | NUMERAIRE {engine.cfg.trading.numeraire} | TOTAL P&L {risk['total_pnl']:+,.4f}[/bold gold1]",
                       style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

class ArbLoopBot:
    def __init__(self, selected_markets, selected_venues, config_path="config.yaml"):
        self.settings = load_config(config_path)
        self.settings.trading.assets = list(selected_markets)
        self.settings.venues = {k: v for k, v in self.settings.venues.items() if k in selected_venues}

        self.logger = setup_console_logger("ArbLoop", self.settings.system.log_level, use_rich=True)
        self.ctx = BotContext(self.settings, self.logger)
        self.audit_log = AuditTrail(self.settings.audit.trade_log, self.settings.audit.opportunity_log)
        self.cache = PriceCache(self.settings.trading.max_sample_age, self.ctx.logger_for("cache"))

        self.rest_venues = {name: CcxtVenue(name, creds, self.ctx.logger_for("venues"), self.settings.system.environment)
                            for name, creds in self.settings.venues.items()}
        if self.settings.system.dry_run:
            exec_venues = {name: ExecutionSimulator(name, creds.fee_rate, self.ctx.logger_for("simulator"),
                                                   price_source=self.cache)
                           for name, creds in self.settings.venues.items()}
        else:
            exec_venues = self.rest_venues

        self.streams = StreamingFeed(list(self.rest_venues), self.settings.trading.assets, self.cache, self.ctx.logger_for("feeds"))
        self.poller = VenuePollingFeed([v for n, v in self.rest_venues.items() if n not in STREAMS],
                                       self.settings.trading.assets, self.cache, self.ctx.logger_for("feeds"),
                                       self.settings.system.cycle_interval)
        self.engine = ArbitrageEngine(self.ctx, self.cache, exec_venues, self.audit_log)

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.engine.stop)
            except NotImplementedError:
                pass  # Windows

    async def _refresh_dashboard(self, live: Live):
        while not self.engine.shutdown.is_set():
            live.update(generate_dashboard(self.engine))
            await asyncio.sleep(0.25)

    async def run(self):
        try:
            print("Initializing Diagnostic Checks...")
            await self.audit_log.start()
            self.logger.info("📡 TESTING VENUE CONNECTIONS...")
            results = [await v.connect(check_auth=not self.settings.system.dry_run) for v in self.rest_venues.values()]
            if not all(results):
                print("❌ Diagnostic Failed. Check API Keys.")
                return

            self._install_signal_handlers()
            await self.streams.start()
            await self.poller.start()

            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                ui = asyncio.create_task(self._refresh_dashboard(live))
                await self.engine.run()
                await ui
        finally:
            print("Shutting down resources...")
            self.engine.stop()
            await self.streams.shutdown()
            await self.poller.shutdown()
            for v in self.rest_venues.values():
                await v.close()
            await self.audit_log.stop()


if __name__ == "__main__":
    with open("config.yaml", "r") as f:
        raw_conf = yaml.safe_load(f)
    try:
        sel_markets, sel_venues = startup_selection(raw_conf)
        bot = ArbLoopBot(sel_markets, sel_venues)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(bot.run())
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
