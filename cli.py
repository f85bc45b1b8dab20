#!/usr/bin/env python3
"""
CLI for tradesync.

Commands:
- markets: List markets from the venue API
- trades: Historical trades for an address
- watch: Stream push updates into a local store and print each change
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

# Add package root
sys.path.insert(0, str(Path(__file__).parent))

from config_env import SyncConfig, load_config
from errors import AdapterUnavailable
from logging_utils import setup_logging
from networks import SUPPORTED_NETWORKS, normalize_network
from realtime_channel import ChannelState, FixedBackoff, RealtimeChannel
from state_store import SequenceClock, StateStore
from venue_api import VenueApi
from wallet import LocalWallet


def _config_for(args) -> SyncConfig:
    config = load_config(getattr(args, 'config', None))
    if getattr(args, 'network', None):
        config.network = normalize_network(args.network)
    return config


def _dumps(payload: Any) -> str:
    return json.dumps(payload, default=str, sort_keys=True)


async def cmd_markets(args):
    """List markets for the configured network."""
    config = _config_for(args)
    api = VenueApi(config.api_base_url, api_key=config.api_key, timeout_seconds=config.request_timeout_seconds)
    try:
        rows = await api.get_markets(config.network)
    except AdapterUnavailable as e:
        print(f"Error: {e}")
        return 1
    finally:
        await api.close()

    if args.json:
        print(_dumps(rows))
        return 0
    if not rows:
        print(f"No markets on {config.network}")
        return 0
    print(f"{'SYMBOL':<16} {'PRICE DEC':>9} {'SIZE DEC':>8}  ADDRESS")
    for row in rows:
        print(
            f"{str(row.get('symbol', '')):<16} {str(row.get('priceDecimals', '-')):>9} "
            f"{str(row.get('sizeDecimals', '-')):>8}  {row.get('address', '')}"
        )
    return 0


async def cmd_trades(args):
    """Print historical trades for an address."""
    config = _config_for(args)
    address = args.address
    if not address:
        wallet = LocalWallet.from_env(config.wallet_key_env)
        if wallet is None:
            print(f"Error: pass an address or set {config.wallet_key_env}")
            return 1
        address = wallet.address

    api = VenueApi(config.api_base_url, api_key=config.api_key, timeout_seconds=config.request_timeout_seconds)
    try:
        trades = await api.get_trades(
            config.network,
            address,
            market=args.market,
            limit=args.limit or config.historical_trades_limit,
            from_ts=args.from_ts,
            to_ts=args.to_ts,
        )
    except AdapterUnavailable as e:
        print(f"Error: {e}")
        return 1
    finally:
        await api.close()

    if args.json:
        print(_dumps(trades))
    else:
        for trade in trades:
            print(_dumps(trade))
        print(f"{len(trades)} trade(s)")
    return 0


async def cmd_watch(args):
    """Run the push channel and print store changes as JSON lines."""
    config = _config_for(args)
    wallet = LocalWallet.from_env(config.wallet_key_env)
    store = StateStore(
        min_leverage=config.min_leverage,
        max_leverage=config.max_leverage,
        position_retention_ms=int(config.position_retention_seconds * 1000),
    )
    clock = SequenceClock()

    def on_change(kind, key, snapshot, changed):
        record = asdict(snapshot) if snapshot is not None else None
        print(_dumps({'kind': kind, 'key': key, 'changed': list(changed), 'value': record}), flush=True)

    def on_state(old: ChannelState, new: ChannelState):
        print(_dumps({'channel': new.value}), flush=True)

    store.subscribe(on_change)
    channel = RealtimeChannel.for_network(
        config.ws_base_url,
        config.network,
        store,
        clock,
        api_key=config.api_key,
        wallet=wallet,
        channels=config.channels,
        backoff=FixedBackoff(config.reconnect_delay_seconds),
        on_state_change=on_state,
    )
    await channel.start()
    try:
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            while True:
                await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await channel.stop()
    return 0


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(
        description='tradesync CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', default=None, help='Path to tradesync.yaml')
    parser.add_argument('--network', choices=sorted(SUPPORTED_NETWORKS), default=None,
                        help='Override the configured network')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # /markets command
    markets_parser = subparsers.add_parser('markets', help='List markets from the venue API')
    markets_parser.add_argument('--json', action='store_true', help='Print raw JSON')

    # /trades command
    trades_parser = subparsers.add_parser('trades', help='Historical trades for an address')
    trades_parser.add_argument('address', nargs='?', help='Trader address (default: wallet from env)')
    trades_parser.add_argument('--market', default=None, help='Filter by market symbol')
    trades_parser.add_argument('--limit', type=int, default=None, help='Max trades (default: from config)')
    trades_parser.add_argument('--from', dest='from_ts', type=int, default=None, help='Start time (ms)')
    trades_parser.add_argument('--to', dest='to_ts', type=int, default=None, help='End time (ms)')
    trades_parser.add_argument('--json', action='store_true', help='Print one JSON array')

    # /watch command
    watch_parser = subparsers.add_parser('watch', help='Stream push updates as JSON lines')
    watch_parser.add_argument('--duration', type=float, default=None, help='Stop after N seconds')

    args = parser.parse_args(argv)
    setup_logging('tradesync', verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'markets':
        return asyncio.run(cmd_markets(args))
    elif args.command == 'trades':
        return asyncio.run(cmd_trades(args))
    elif args.command == 'watch':
        try:
            return asyncio.run(cmd_watch(args))
        except KeyboardInterrupt:
            return 0
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
