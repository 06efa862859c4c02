from __future__ import annotations

import argparse
import json
import sys

import requests


DEPLOY_CMDS = {"deploy": "deploy", "redeploy": "redeploy", "local-deploy": "local_deploy"}
SERVICE_CMDS = {"stop": "stopservice", "start": "startservice", "undeploy": "undeploy", "remove": "remove"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _load_manifest(path: str) -> dict:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def _post_message(base: str, payload: dict) -> int:
    # Lifecycle commands block until the engine is done; pulls can take a while.
    r = requests.post(f"{base}/messages", json=payload, timeout=600)
    _print(r.json())
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Edge Agent CLI")
    p.add_argument("--api", default="http://localhost:8030", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name in DEPLOY_CMDS:
        s = sub.add_parser(name, help=f"{name.capitalize()} a data service from a manifest file")
        s.add_argument("--manifest", required=True, help="Path to the manifest JSON")

    for name in SERVICE_CMDS:
        s = sub.add_parser(name, help=f"{name.capitalize()} a data service")
        s.add_argument("--name", required=True, help="Manifest name")
        s.add_argument("--version", required=True, help="Manifest version number")

    s_status = sub.add_parser("status", help="Show known manifests")
    s_status.add_argument("--name", help="Only this manifest")
    s_status.add_argument("--version", help="Manifest version (with --name)")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_logs = sub.add_parser("logs", help="Show container logs of a data service")
    s_logs.add_argument("--name", required=True, help="Manifest name")
    s_logs.add_argument("--version", required=True, help="Manifest version number")
    s_logs.add_argument("--since", help="ISO timestamp, only newer lines")
    s_logs.add_argument("--until", help="ISO timestamp, only older lines")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd in DEPLOY_CMDS:
        payload = _load_manifest(args.manifest)
        payload["command"] = DEPLOY_CMDS[args.cmd]
        return _post_message(base, payload)

    if args.cmd in SERVICE_CMDS:
        payload = {"manifestName": args.name, "versionNumber": args.version, "command": SERVICE_CMDS[args.cmd]}
        return _post_message(base, payload)

    if args.cmd == "status":
        if args.name and args.version:
            r = requests.get(f"{base}/manifests/{args.name}/{args.version}", timeout=10)
        else:
            r = requests.get(f"{base}/manifests", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "logs":
        params = {k: v for k, v in (("since", args.since), ("until", args.until)) if v}
        r = requests.get(f"{base}/manifests/{args.name}/{args.version}/logs", params=params, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
