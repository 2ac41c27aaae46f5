"""Orchestra agent diagnostics CLI."""

from __future__ import annotations

import argparse
import json
import shutil
import time
from pathlib import Path

from orchestra_agent.config import AgentSettings
from orchestra_agent.credentials import encrypt_credential


def load_settings() -> AgentSettings:
    settings = AgentSettings()
    settings.base_dir = settings.base_dir.expanduser()
    return settings


def _head_branch(repo: Path) -> str | None:
    head = repo / ".git" / "HEAD"
    try:
        content = head.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    prefix = "ref: refs/heads/"
    return content[len(prefix) :] if content.startswith(prefix) else None


def _age_hours(path: Path, now: float) -> float:
    return (now - path.stat().st_mtime) / 3600


def _directories(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(child for child in root.iterdir() if child.is_dir())


def cmd_cache(args: argparse.Namespace) -> None:
    settings = load_settings()
    now = time.time()
    entries = [
        {
            "repository_id": path.name.removeprefix("repo-"),
            "path": str(path),
            "branch": _head_branch(path),
            "age_hours": round(_age_hours(path, now), 2),
        }
        for path in _directories(settings.cache_dir)
    ]
    if args.json:
        print(json.dumps(entries, indent=2))
    else:
        for entry in entries:
            print(f"{entry['repository_id']} [{entry['branch'] or '?'}] -> {entry['path']}")


def cmd_workspaces(args: argparse.Namespace) -> None:
    settings = load_settings()
    now = time.time()
    entries = [
        {"id": path.name, "path": str(path), "age_hours": round(_age_hours(path, now), 2)}
        for path in _directories(settings.workspace_dir)
    ]
    if args.json:
        print(json.dumps(entries, indent=2))
    else:
        for entry in entries:
            print(f"{entry['id']} ({entry['age_hours']}h) -> {entry['path']}")


def cmd_sweep(args: argparse.Namespace) -> None:
    """Delete workspace directories left behind by a previous agent process."""

    settings = load_settings()
    max_age = args.max_age_hours if args.max_age_hours is not None else settings.workspace_max_age_hours
    now = time.time()
    removed: list[str] = []
    for path in _directories(settings.workspace_dir):
        if _age_hours(path, now) <= max_age:
            continue
        if not args.dry_run:
            shutil.rmtree(path)
        removed.append(path.name)
    print(json.dumps({"max_age_hours": max_age, "dry_run": args.dry_run, "removed": removed}, indent=2))


def cmd_encrypt(args: argparse.Namespace) -> None:
    settings = load_settings()
    secret = args.key if args.key is not None else settings.encryption_key
    print(encrypt_credential(args.credential, secret))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orchestra agent diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_cache = sub.add_parser("cache", help="List cached repositories")
    p_cache.add_argument("--json", action="store_true", help="Output JSON")
    p_cache.set_defaults(func=cmd_cache)

    p_workspaces = sub.add_parser("workspaces", help="List workspace directories on disk")
    p_workspaces.add_argument("--json", action="store_true", help="Output JSON")
    p_workspaces.set_defaults(func=cmd_workspaces)

    p_sweep = sub.add_parser("sweep", help="Delete stale workspace directories")
    p_sweep.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Age threshold; defaults to ORCHESTRA_WORKSPACE_MAX_AGE_HOURS",
    )
    p_sweep.add_argument("--dry-run", action="store_true", help="Only report what would be removed")
    p_sweep.set_defaults(func=cmd_sweep)

    p_encrypt = sub.add_parser(
        "encrypt",
        help="Encrypt a 'username:token' or bare token for a repository configuration",
    )
    p_encrypt.add_argument("credential")
    p_encrypt.add_argument("--key", default=None, help="Key material; defaults to ENCRYPTION_KEY")
    p_encrypt.set_defaults(func=cmd_encrypt)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
