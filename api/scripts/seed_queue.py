import argparse
import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from queuing.deps import get_queue_manager, get_scheduler
from queuing.services.seeding import seed_queue


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed dummy users into the matching queue")
    parser.add_argument("--n-users", type=int, default=100)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--reset", action="store_true")
    parser.add_argument("--run-cycle", action="store_true", help="run one matching cycle after seeding")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    summary = seed_queue(get_queue_manager(), n_users=args.n_users, seed=args.seed, reset=args.reset)

    print("Seed completed")
    for k, v in summary.items():
        print(f"- {k}: {v}")

    if args.run_cycle:
        report = get_scheduler().run_cycle()
        print("Matching cycle")
        for k, v in report.summary().items():
            print(f"- {k}: {v}")


if __name__ == "__main__":
    main()
