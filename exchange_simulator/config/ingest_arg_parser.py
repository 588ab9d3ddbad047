import argparse


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Build stocks.json from per-symbol CSV price files."
    )
    parser.add_argument(
        "--csv-dir",
        type=str,
        default="data/csv",
        help="Directory containing <SYMBOL>.csv files (default: data/csv)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="data/stocks.json",
        help="Path to the output stocks file (default: data/stocks.json)",
    )
    parser.add_argument(
        "--mapping",
        type=str,
        help="YAML or JSON file mapping symbols to {id, name, enabled} (default: built-in list)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level",
    )
    return parser.parse_args()
