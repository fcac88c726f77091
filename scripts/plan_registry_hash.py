from __future__ import annotations

import argparse
import json
import sys

from tenantguard.core.errors import PlanRegistryError
from tenantguard.services.plans import default_plan_registry, load_plan_registry


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print or verify the plan registry integrity hash")
    parser.add_argument("--path", default=None, help="Plan registry JSON file; defaults to the built-in plans")
    parser.add_argument("--expected", default=None, help="Fail unless the registry hash matches this value")
    parser.add_argument("--dump", action="store_true", help="Print the canonical registry JSON instead")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        registry = load_plan_registry(args.path) if args.path else default_plan_registry()
        if args.dump:
            print(json.dumps(registry.to_dict(), indent=2, sort_keys=True))
            return 0
        registry.verify_integrity(args.expected)
    except PlanRegistryError as exc:
        print(f"plan_registry_hash failed: {exc}", file=sys.stderr)
        return 1
    print(registry.integrity_hash())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
