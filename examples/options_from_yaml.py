"""Load iteration options from YAML and analyse a seed-bank model.

Only the ``iteration:`` section of the file is read, so it can live next to
settings for other tools.

Run:
    python examples/options_from_yaml.py examples/ipm_options.yaml
"""

from __future__ import annotations

import sys

from ipm_analysis import IPMAnalyzer, load_options, seedbank_ipm


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else "examples/ipm_options.yaml"
    options = load_options(path, overrides={"iteration": {"lifetable_ages": 10}})
    print(f"options: {options}")

    analyzer = IPMAnalyzer.from_model(seedbank_ipm(), options)
    for key, value in analyzer.summary().items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
