import argparse
import json
import logging
from pathlib import Path

import numpy as np

from debtox.adapter import load_run_file, run_from_config


def main():
    parser = argparse.ArgumentParser(description="Run a DEBtox2019 example scenario.")
    parser.add_argument("--run", type=str, required=True, help="Path to run YAML (par, glo, run sections)")
    parser.add_argument("--outdir", type=str, default="outputs", help="Output directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log solver progress")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    run_path = Path(args.run)
    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    cfg = load_run_file(run_path)
    traj = run_from_config(cfg)

    # Save outputs
    np.savetxt(outdir / "debtox_times.csv", traj.t, delimiter=",")
    np.save(outdir / "debtox_states.npy", traj.y)
    final = traj.final_state()
    with (outdir / "debtox_final.json").open("w", encoding="utf-8") as f:
        json.dump(final, f, indent=2)

    print("Simulation finished.")
    print("Final state:")
    print(json.dumps(final, indent=2))


if __name__ == "__main__":
    main()
