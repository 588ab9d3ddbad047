import logging

from exchange_simulator.config.ingest_arg_parser import parse_arguments
from exchange_simulator.config.logging_config import setup_logging
from exchange_simulator.etl.csv_etl import build_stock_records, load_mapping, write_stocks


def main():
    args = parse_arguments()
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting stock ingestion.")
    logger.info(f"Arguments parsed: {args}")

    try:
        mapping = load_mapping(args.mapping)
        stocks = build_stock_records(args.csv_dir, mapping)
        write_stocks(stocks, args.output)
        logger.info("Stock ingestion completed successfully.")
    except Exception as e:
        logger.error(f"An error occurred: {e}")
        raise


if __name__ == "__main__":
    main()
