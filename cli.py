from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Microservice upgrade lifecycle CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_ls = sub.add_parser("list", help="List microservice definitions")
    s_ls.add_argument("--archived", choices=["true", "false"], help="Only archived / unarchived definitions")

    s_show = sub.add_parser("show", help="Show one microservice definition")
    s_show.add_argument("id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    sub.add_parser("upgrades", help="Show upgrade status")
    sub.add_parser("reconcile", help="Run one upgrade check now")

    s_inst = sub.add_parser("install", help="Install a microservice from the exchange")
    s_inst.add_argument("--spec-ref", required=True)
    s_inst.add_argument("--org", required=True)
    s_inst.add_argument("--arch", required=True)
    s_inst.add_argument("--range", dest="upgrade_version_range", default="0.0.0")
    s_inst.add_argument("--name", default="")
    s_inst.add_argument("--auto-upgrade", action="store_true")
    s_inst.add_argument("--no-active-upgrade", action="store_true", help="Upgrade without evacuating agreements first")

    s_cfg = sub.add_parser("config", help="Change upgrade configuration")
    s_cfg.add_argument("id")
    s_cfg.add_argument("--range", dest="upgrade_version_range")
    s_cfg.add_argument("--name")
    s_cfg.add_argument("--auto-upgrade", type=_bool)
    s_cfg.add_argument("--active-upgrade", type=_bool)

    s_phase = sub.add_parser("phase", help="Record an upgrade phase")
    s_phase.add_argument("id")
    s_phase.add_argument("state", choices=["started", "unregistered", "agreements_cleared", "execution_started", "reregistered", "failed"])
    s_phase.add_argument("--reason", type=int, default=0)
    s_phase.add_argument("--description", default="")

    s_rb = sub.add_parser("rollback", help="Roll back an upgrading microservice")
    s_rb.add_argument("id")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "list":
        params = {"archived": args.archived} if args.archived else None
        _print(requests.get(f"{base}/microservices", params=params, timeout=10).json())
        return 0

    if args.cmd == "show":
        r = requests.get(f"{base}/microservices/{args.id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "upgrades":
        _print(requests.get(f"{base}/upgrades", timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/reconcile", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "install":
        payload = {
            "spec_ref": args.spec_ref,
            "org": args.org,
            "arch": args.arch,
            "upgrade_version_range": args.upgrade_version_range,
            "name": args.name,
            "auto_upgrade": args.auto_upgrade,
            "active_upgrade": not args.no_active_upgrade,
        }
        r = requests.post(f"{base}/microservices", json=payload, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "config":
        payload = {
            k: v
            for k, v in {
                "upgrade_version_range": args.upgrade_version_range,
                "name": args.name,
                "auto_upgrade": args.auto_upgrade,
                "active_upgrade": args.active_upgrade,
            }.items()
            if v is not None
        }
        r = requests.put(f"{base}/microservices/{args.id}/upgrade-config", json=payload, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "phase":
        payload = {"state": args.state, "reason": args.reason, "description": args.description}
        r = requests.post(f"{base}/microservices/{args.id}/phase", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollback":
        r = requests.post(f"{base}/microservices/{args.id}/rollback", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
