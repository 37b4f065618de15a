from __future__ import annotations

import argparse
from pathlib import Path

from infra_provisioner.config import apply, load, plan


def _progress(change: object, event: str) -> None:
    address = getattr(change, "address", "unknown")
    if event == "start":
        print(f"[apply:start] {address}")
    else:
        print(f"[apply:done]  {address}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply infra-provisioner config via Python API")
    parser.add_argument(
        "--config", default="examples/two-tier/infra.yaml", help="Path to config file"
    )
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("--destroy", action="store_true", help="Plan the destruction of everything")
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip refresh during plan",
    )
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, destroy=args.destroy, refresh=not args.no_refresh)
    print("Plan summary:", plan_obj.summary())
    for i, batch in enumerate(plan_obj.batches, start=1):
        print(f"batch {i}: {', '.join(batch)}")
    for change in plan_obj.changes:
        print(f"- {change.action.value:7} {change.address}")

    if args.apply:
        result = apply(plan_obj, config, progress=_progress)
        print("Apply summary:", result.summary())
        for outcome in result.failed:
            print(f"  failed  {outcome.address}: {outcome.reason}")


if __name__ == "__main__":
    main()
