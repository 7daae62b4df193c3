"""CLI entry point for jam-engine."""

import os
import signal
import sys

import click
import yaml
from eth_account import Account
from web3 import Web3

from .amplifier import Amplifier
from .attributor import Attributor
from .audit import ContractAuditor
from .builder import BuilderRelay
from .constants import BASE_EMISSION_INTERVAL_MS
from .echo import CalldataAnchor, EchoChain, HoneypotHint, IpfsPin
from .emitter import Emitter
from .market import MarketOracle
from .rpc import ResilientRPC
from .selector import PatternSelector
from .state import StateStore
from .store import RecordStore
from .wallet import Wallet

DEFAULT_RPC = "https://mainnet.base.org"
DEFAULT_BUILDER = "https://titanrelay.xyz"

# config key -> environment variable consulted when no CLI option covers it
ENV_KEYS = {
    "dmap_address": "DMAP_ADDRESS",
    "vault_address": "VAULT_ADDRESS",
    "target_contract_address": "TARGET_CONTRACT_ADDRESS",
    "detect_interval": "DETECT_INTERVAL",
    "max_gas_gwei": "MAX_GAS_GWEI",
    "enable_bsv_echo": "ENABLE_BSV_ECHO",
    "wallet_address": "WALLET_ADDRESS",
    "honeypot_address": "HONEYPOT_ADDRESS",
    "builder_url": "BUILDER_URL",
    "ipfs_api_key": "IPFS_API_KEY",
    "echo_private_key": "ECHO_PRIVATE_KEY",
    "enable_recursive_signals": "ENABLE_RECURSIVE_SIGNALS",
}


def load_config(path: str | None) -> dict:
    if path is None:
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def setting(cfg: dict, key: str, default=None):
    """Environment beats the YAML file, which beats the default."""
    env = ENV_KEYS.get(key)
    if env and os.environ.get(env):
        return os.environ[env]
    value = cfg.get(key)
    return default if value is None else value


def as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def resolve_key(raw_key: str | None) -> str | None:
    """Hex key with or without 0x, or a path to a file holding one."""
    if raw_key and not raw_key.startswith("0x"):
        if len(raw_key) == 64 and all(c in "0123456789abcdefABCDEF" for c in raw_key):
            raw_key = "0x" + raw_key
        else:
            with open(raw_key) as f:
                raw_key = f.read().strip()
            if not raw_key.startswith("0x"):
                raw_key = "0x" + raw_key
    return raw_key


def split_urls(value) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [u.strip() for u in value if u and u.strip()]
    return [u.strip() for u in str(value).split(",") if u.strip()]


@click.group()
@click.option("--rpc", envvar="RPC_URLS", default=None, help="Comma-separated RPC endpoints")
@click.option("--key", envvar="PRIVATE_KEY", default=None, help="Private key (hex) or path to keyfile")
@click.option("--mirror-key", envvar="MIRROR_PRIVATE_KEY", default=None,
              help="Capture identity private key (hex) or path to keyfile")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="Path to config.yaml")
@click.option("--data-dir", envvar="JAM_DATA_DIR", default=None, help="Directory for state, records and logs")
@click.pass_context
def cli(ctx, rpc, key, mirror_key, config_path, data_dir):
    """JAM engine: signal emission, amplification and attribution on Base."""
    cfg = load_config(config_path)
    ctx.ensure_object(dict)

    ctx.obj["rpc_urls"] = split_urls(rpc or cfg.get("rpc_urls") or os.environ.get("RPC_URL") or DEFAULT_RPC)
    ctx.obj["data_dir"] = data_dir or cfg.get("data_dir") or "."
    ctx.obj["private_key"] = resolve_key(key or cfg.get("private_key"))
    ctx.obj["mirror_key"] = resolve_key(mirror_key or cfg.get("mirror_private_key"))
    ctx.obj["config"] = cfg


def get_rpc(ctx) -> ResilientRPC:
    if not ctx.obj["rpc_urls"]:
        raise click.ClickException("RPC URL required (--rpc, RPC_URLS or config rpc_urls)")
    return ResilientRPC(ctx.obj["rpc_urls"])


def get_account(ctx, name: str = "private_key"):
    raw_key = ctx.obj.get(name)
    if not raw_key:
        flag = "--key" if name == "private_key" else "--mirror-key"
        raise click.ClickException(f"Private key required ({flag} or config {name})")
    return Account.from_key(raw_key)


def require(cfg: dict, key: str) -> str:
    value = setting(cfg, key)
    if not value:
        raise click.ClickException(f"{ENV_KEYS[key]} required (environment or config {key})")
    return value


def install_sigterm():
    """SIGTERM unwinds like Ctrl+C so the emission lock is released on the way out."""
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))


@cli.command()
@click.option("--count", default=None, type=int, help="Number of ticks (default: infinite)")
@click.option("--once", is_flag=True, default=False, help="Run a single tick and exit")
@click.option("--interval", "interval_ms", default=None, type=int,
              help="Milliseconds between ticks (default: DETECT_INTERVAL or 540000)")
@click.pass_context
def emit(ctx, count, once, interval_ms):
    """Select a pattern, persist a record and register it on chain."""
    cfg = ctx.obj["config"]
    rpc = get_rpc(ctx)
    wallet = Wallet(rpc, get_account(ctx), "primary")
    target = setting(cfg, "target_contract_address")
    emitter = Emitter(
        rpc, wallet,
        RecordStore(ctx.obj["data_dir"]),
        StateStore(ctx.obj["data_dir"]),
        PatternSelector(cfg.get("quiet_windows")),
        require(cfg, "dmap_address"),
        oracle=MarketOracle(rpc),
        auditor=ContractAuditor(rpc) if target else None,
        target_contract=target,
        priority_baseline_gwei=float(cfg.get("priority_baseline_gwei", 0.001)),
    )
    interval_ms = interval_ms or int(setting(cfg, "detect_interval", BASE_EMISSION_INTERVAL_MS))

    click.echo(f"Emitting from {wallet.address}")
    click.echo(f"Registry:   {emitter.dmap_address}")
    click.echo(f"Interval:   {interval_ms} ms")
    if not target:
        click.echo("No target contract: records are void and will not be amplified")

    install_sigterm()
    emitter.run(interval_ms / 1000, count=1 if once else count)


@cli.command()
@click.option("--count", default=None, type=int, help="Number of polls (default: infinite)")
@click.option("--interval", default=12.0, type=float, help="Seconds between polls (default: 12)")
@click.pass_context
def amplify(ctx, count, interval):
    """Watch for registered signals, bait publicly and capture through the builder."""
    cfg = ctx.obj["config"]
    rpc = get_rpc(ctx)
    account = get_account(ctx)
    mirror_account = get_account(ctx, "mirror_key")
    wallet = Wallet(rpc, account, "primary")
    mirror = Wallet(rpc, mirror_account, "mirror")

    echo_chain = None
    if as_bool(setting(cfg, "enable_bsv_echo", False)):
        publishers = []
        echo_key = resolve_key(setting(cfg, "echo_private_key"))
        if echo_key:
            publishers.append(CalldataAnchor(Wallet(rpc, Account.from_key(echo_key), "echo")))
        ipfs_key = setting(cfg, "ipfs_api_key")
        if ipfs_key:
            publishers.append(IpfsPin(ipfs_key))
        if publishers:
            echo_chain = EchoChain(publishers)
        else:
            click.echo("Echo enabled but no publisher configured (ECHO_PRIVATE_KEY or IPFS_API_KEY)", err=True)

    honeypot = setting(cfg, "honeypot_address")
    max_gas = setting(cfg, "max_gas_gwei")
    amplifier = Amplifier(
        rpc, wallet, mirror,
        RecordStore(ctx.obj["data_dir"]),
        BuilderRelay(setting(cfg, "builder_url", DEFAULT_BUILDER), mirror_account),
        require(cfg, "dmap_address"),
        setting(cfg, "wallet_address") or account.address,
        vault_address=setting(cfg, "vault_address"),
        max_gas_gwei=float(max_gas) if max_gas else None,
        confidence=float(cfg.get("confidence", 0.9)),
        echo_chain=echo_chain,
        hint=HoneypotHint(wallet, Web3.to_checksum_address(honeypot)) if honeypot else None,
        recursive_signals=as_bool(setting(cfg, "enable_recursive_signals", False)),
    )

    click.echo(f"Amplifying for emitter {amplifier.emitter_address}")
    click.echo(f"Capture identity: {mirror.address}")
    install_sigterm()
    amplifier.run(interval, count=count)


@cli.command()
@click.option("--count", default=None, type=int, help="Number of scans (default: infinite)")
@click.option("--interval", default=12.0, type=float, help="Seconds between scans (default: 12)")
@click.pass_context
def attribute(ctx, count, interval):
    """Match later swaps to amplified signals and attest the yield."""
    cfg = ctx.obj["config"]
    rpc = get_rpc(ctx)
    wallet = Wallet(rpc, get_account(ctx), "primary")
    own = [a for a in (setting(cfg, "wallet_address"),) if a]
    if ctx.obj.get("mirror_key"):
        own.append(Account.from_key(ctx.obj["mirror_key"]).address)
    attributor = Attributor(
        rpc, wallet,
        RecordStore(ctx.obj["data_dir"]),
        StateStore(ctx.obj["data_dir"]),
        require(cfg, "vault_address"),
        own_addresses=own,
    )

    click.echo(f"Attributing to vault {attributor.vault_address}")
    install_sigterm()
    attributor.run(interval, count=count)


@cli.command()
@click.pass_context
def status(ctx):
    """Show the shared state, lock holder, pattern statistics and stored records."""
    data_dir = ctx.obj["data_dir"]
    state = StateStore(data_dir).read()
    store = RecordStore(data_dir)
    m = state["metrics"]
    lock = state["lock"]

    click.echo(f"Data dir:            {os.path.abspath(data_dir)}")
    click.echo(f"Last hash:           {state['last_hash']}")
    click.echo(f"Nonce:               {state['nonce']}")
    if lock["locked"]:
        click.echo(f"Lock:                held by pid {lock['pid']} since {lock['acquired_at']}")
    else:
        click.echo("Lock:                free")

    click.echo("\nMetrics:")
    click.echo(f"  Analyses:          {m['total_analyses']} ({m['audit_passes']} pass, {m['audit_fails']} fail)")
    click.echo(f"  Last audit fail:   {m['last_audit_fail_reason']}")
    click.echo(f"  Emissions:         {m['emission_successes']} ok, {m['emission_failures']} failed")
    for name, n in m["error_types"].items():
        if n:
            click.echo(f"  {name + ':':<19}{n}")

    click.echo("\nPatterns:")
    for name, stats in m["pattern_stats"].items():
        click.echo(f"  {name:<18} attempts={stats['attempts']} successes={stats['successes']} "
                   f"attributions={stats['attributions']} reinforcements={stats['reinforcements']}")

    records = list(store.list_records())
    click.echo(f"\nRecords:             {len(records)}")
    click.echo(f"  Amplified:         {sum(1 for r in records if r.get('amplification_at'))}")
    click.echo(f"  Attributions:      {sum(1 for _ in store.list_attributions())}")
    beacon = store.read_beacon()
    if beacon:
        click.echo(f"Beacon:              {beacon.get('hash')} @ {beacon.get('confirmed_timestamp')}")


@cli.command()
@click.option("--intent", default=None, help="Only entries of this intent class")
@click.option("--limit", default=20, type=int, help="Most recent N entries (default: 20)")
@click.pass_context
def jams(ctx, intent, limit):
    """List confirmed emissions from the successful log."""
    store = RecordStore(ctx.obj["data_dir"])
    entries = list(store.list_by_intent(intent) if intent else store.list_successful())
    if not entries:
        click.echo("No confirmed emissions.")
        return
    for entry in entries[-limit:]:
        click.echo(f"{entry.get('timestamp')}  {entry.get('signal_hash')}  "
                   f"{entry.get('intent_class')}  resonance={entry.get('resonance')}")


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Clear the lock even if its holder is alive")
@click.pass_context
def unlock(ctx, force):
    """Clear the emission lock left behind by a crashed emitter."""
    state = StateStore(ctx.obj["data_dir"])
    lock = state.read()["lock"]
    if not lock["locked"]:
        click.echo("Lock is free.")
        return
    if state.is_alive(lock["pid"]) and not force:
        raise click.ClickException(f"Lock held by live pid {lock['pid']} (use --force)")
    state.release_lock()
    click.echo(f"Released lock held by pid {lock['pid']}.")


if __name__ == "__main__":
    cli()
