from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TextIO

from agent.main import run_agent
from client.launcher import SubprocessLauncher
from client.orchestrator import Orchestrator
from common.config import TunnelConfig, load_config
from common.connection import ConnectionProtocol
from common.log import setup_logging
from common.model import AgentKind, ConnectionRecord, DeviceLocator, ensure_agent_kind
from common.registry import ConnectionRegistry
from common.service import ServiceClient

PUBLIC_COMMANDS = ("connect", "disconnect", "list")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default="", help="path to yaml config (default ~/.config/cvdr/cvdr.yaml)")
    common.add_argument("--service_url", default=None, help="base URL of the orchestration service")
    common.add_argument("--zone", default=None, help="service zone")
    common.add_argument("--proxy", default=None, help="socks5://host:port used to reach hosts")
    common.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    parser = argparse.ArgumentParser(prog="cvd-tunnel", description="ADB tunnels to remote virtual devices")
    sub = parser.add_subparsers(dest="command", metavar="{" + ",".join(PUBLIC_COMMANDS) + "}")
    sub.required = True

    p = sub.add_parser("connect", parents=[common], help="open tunnels and register them with adb")
    p.add_argument("--host", default="", help="host the devices run on")
    p.add_argument("--connect_agent", default=None, choices=[k.value for k in AgentKind])
    p.add_argument("--signaling_config", default=None, help="json file with ICE servers")
    p.add_argument("devices", nargs="+", metavar="DEVICE")

    p = sub.add_parser("disconnect", parents=[common], help="close tunnels")
    p.add_argument("--host", default="", help="only connections to this host")
    p.add_argument("devices", nargs="*", metavar="DEVICE")

    p = sub.add_parser("list", parents=[common], help="show local connections")
    p.add_argument("--host", default="", help="only connections to this host")

    # Agent processes, spawned by connect.
    for kind in AgentKind:
        p = sub.add_parser(kind.value, parents=[common])
        p.add_argument("--host", required=True)
        p.add_argument("--signaling_config", default=None)
        p.add_argument("device")
    return parser


def _build_config(args: argparse.Namespace) -> TunnelConfig:
    base = load_config(args.config or None)
    return base.merged(
        service_url=args.service_url,
        zone=args.zone,
        proxy=args.proxy,
        signaling_config=getattr(args, "signaling_config", None),
        connect_agent=getattr(args, "connect_agent", None),
        log_level="debug" if args.verbose else None,
    )


def _locators(config: TunnelConfig, host: str, devices: list[str]) -> list[DeviceLocator]:
    root = config.service_root_endpoint()
    return [DeviceLocator(root, host, device) for device in devices]


def _print_records(records: list[ConnectionRecord], out: TextIO) -> None:
    if not records:
        print("no connections", file=out)
        return
    for r in records:
        pid = r.agent_pid if r.agent_pid is not None else "-"
        print(f"{r.locator}\t{r.agent_kind.value}\t{r.status.control_state.value}\t{r.status.describe()}\tpid={pid}", file=out)


async def _dispatch(args: argparse.Namespace, config: TunnelConfig) -> int:
    registry = ConnectionRegistry(config.control_dir_path, pending_grace=config.agent_start_timeout)

    if args.command in (AgentKind.PROXY.value, AgentKind.SIGNALING.value):
        locator = _locators(config, args.host, [args.device])[0]
        return await run_agent(config, locator, AgentKind(args.command), signaling_config=config.signaling_config)

    if args.command == "list":
        records = registry.list_by_host(args.host) if args.host else registry.list_all()
        _print_records(records, sys.stdout)
        return 0

    launcher = SubprocessLauncher(
        config,
        signaling_config=config.signaling_config,
        config_path=args.config,
        verbose=args.verbose,
    )
    protocol = ConnectionProtocol(config, registry, launcher, resolver=ServiceClient(config))
    orchestrator = Orchestrator(protocol, registry)

    if args.command == "connect":
        preference = ensure_agent_kind(config.connect_agent) if config.connect_agent else None
        result = await orchestrator.connect_many(_locators(config, args.host, args.devices), preference)
    else:
        locators = _locators(config, args.host, args.devices) if args.devices else None
        result = await orchestrator.disconnect_many(locators, host=args.host or None)
    result.raise_for_failures()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "devices", None) and not args.host:
        parser.error("devices require --host")
    setup_logging("debug" if args.verbose else "info")
    try:
        config = _build_config(args)
        setup_logging(config.log_level)
        code = asyncio.run(_dispatch(args, config))
    except KeyboardInterrupt:
        code = 130
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
