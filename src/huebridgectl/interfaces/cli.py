import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys

from huebridgectl.api import BridgeController
from huebridgectl.domain.errors import DiscoveryError
from huebridgectl.domain.models import ConfirmedDevice, ConnectionState
from huebridgectl.infrastructure.config import load_config
from huebridgectl.infrastructure.credential_store import JsonFileCredentialStore

LOG = logging.getLogger(__name__)


def _device_line(index: int, device: ConfirmedDevice) -> str:
    name = device.display_name or "bridge"
    ident = device.normalized_id or "?"
    return f"[{index}] {name} id={ident} -> {device.address}:{device.port}"


def _device_dict(device: ConfirmedDevice) -> dict:
    return {
        "id": device.normalized_id,
        "address": device.address,
        "port": device.port,
        "name": device.display_name,
    }


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        force=True,
    )


def _cmd_discover(controller: BridgeController, args) -> None:
    devices = controller.discover(args.id)
    if args.json:
        print(json.dumps([_device_dict(d) for d in devices], indent=2, ensure_ascii=False))
        return
    for i, d in enumerate(devices):
        print(_device_line(i, d))


async def _supervise(controller: BridgeController, args) -> None:
    try:
        result = await controller.connect_async(args.id, args.key)
        if isinstance(result, list):
            for i, d in enumerate(result):
                print(_device_line(i, d))
            raise RuntimeError("Multiple bridges detected. Run again with --id ID.")
        if result == ConnectionState.NEEDS_AUTHENTICATION:
            raise RuntimeError("Bridge requires authentication. Run again with --key KEY.")
        if result != ConnectionState.CONNECTED:
            raise RuntimeError(f"Connection failed (state={result.value}).")

        device = controller.supervisor.device
        print(f"Connected to {device.display_name or 'bridge'} at {device.address}")
        if not args.once:
            await asyncio.Event().wait()
    finally:
        await controller.supervisor.disconnect()


def _cmd_status(store: JsonFileCredentialStore, as_json: bool) -> None:
    record = store.get()
    if record is None:
        print("No bridge configured.")
        return
    if as_json:
        data = dataclasses.asdict(record)
        data["secret_key"] = bool(record.secret_key)
        print(json.dumps(data, indent=2, ensure_ascii=False))
        return
    key_state = "stored" if record.secret_key else "missing"
    print(
        f"{record.display_name or 'bridge'} id={record.device_id} "
        f"-> {record.last_known_address}:{record.port} key={key_state}"
    )


def main() -> None:
    p = argparse.ArgumentParser(
        prog="huebridgectl", description="Hue bridge discovery and connection supervision"
    )
    p.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override log level (e.g. DEBUG, INFO, WARNING).",
    )
    p.add_argument("--config", type=str, default=None)

    sub = p.add_subparsers(dest="cmd", required=True)
    discover = sub.add_parser("discover")
    discover.add_argument("--id", type=str, default=None, help="Only accept this bridge id")
    discover.add_argument("--timeout", type=float, default=None)
    discover.add_argument("--no-cloud", action="store_true")
    discover.add_argument("--json", action="store_true")

    connect = sub.add_parser("connect")
    connect.add_argument("--id", type=str, default=None)
    connect.add_argument("--key", type=str, default=None, help="Bridge application key")
    connect.add_argument("--once", action="store_true", help="Exit after the handshake")

    status = sub.add_parser("status")
    status.add_argument("--json", action="store_true")
    sub.add_parser("forget")

    args = p.parse_args()
    requested_log_level = args.log_level or os.getenv("HUEBRIDGECTL_LOG_LEVEL")
    if requested_log_level is not None:
        _configure_logging(requested_log_level)

    try:
        cfg = load_config(args.config)
        if requested_log_level is None:
            _configure_logging(cfg.log_level)
        store = JsonFileCredentialStore(cfg.credentials_path)

        if args.cmd == "status":
            _cmd_status(store, args.json)
            return
        if args.cmd == "forget":
            store.clear()
            print("OK")
            return

        if args.cmd == "discover":
            if args.timeout is not None:
                cfg = dataclasses.replace(
                    cfg,
                    discovery=dataclasses.replace(cfg.discovery, overall_timeout_s=args.timeout),
                )
            controller = BridgeController(cfg=cfg, credentials=store, use_cloud=not args.no_cloud)
            _cmd_discover(controller, args)
            return

        controller = BridgeController(cfg=cfg, credentials=store)
        asyncio.run(_supervise(controller, args))
    except KeyboardInterrupt:
        return
    except DiscoveryError as exc:
        LOG.debug("discovery failed kind=%s", exc.kind.value)
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(2)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(2)
