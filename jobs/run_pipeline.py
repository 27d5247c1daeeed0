from datetime import datetime, timezone
import argparse
import subprocess
import sys

def run(cmd: list[str]) -> None:
    print("\n$ " + " ".join(cmd))
    p = subprocess.run(cmd)
    if p.returncode != 0:
        raise SystemExit(p.returncode)

def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--batch", type=int, default=25, help="reviews to analyze")
    args = parser.parse_args()

    started = datetime.now(timezone.utc)
    print(f"Pipeline start: {started.isoformat()}")

    # 1) drop spent oauth states
    run([sys.executable, "-m", "jobs.maintenance.purge_oauth_states"])

    # 2) sync every connected source
    run([sys.executable, "-m", "jobs.ingest.run_ingest", "--all"])

    # 3) draft replies for new reviews
    run([sys.executable, "-m", "jobs.analyze.analyzer", "--batch", str(args.batch)])

    finished = datetime.now(timezone.utc)
    print(f"Pipeline finished: {finished.isoformat()}")

if __name__ == "__main__":
    main()
