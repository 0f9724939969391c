# create_db_tables.py

import os
import sys
import logging
import argparse

# Add project root to path to allow module imports
project_root = os.path.abspath(os.path.dirname(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from sqlalchemy.exc import SQLAlchemyError

from data.database import engine, get_db, create_all_tables, save_tank

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def main(argv=None):
    """
    Creates every table the batch engine uses. Safe to run repeatedly.
    Optionally registers a storage tank so batches can be opened against it.
    """
    parser = argparse.ArgumentParser(description="Create batch engine tables.")
    parser.add_argument("--tank-id", help="Register a storage tank with this asset id.")
    parser.add_argument("--diameter-m", type=float, help="Tank diameter in metres.")
    parser.add_argument("--product", help="Product stored in the tank.")
    parser.add_argument("--api-gravity", type=float, help="Base API gravity of the product.")
    args = parser.parse_args(argv)

    if not engine:
        logging.critical("Database engine is not configured. Cannot create tables. Check your .env and config settings.")
        return 1

    try:
        logging.info("Connecting to the database to create tables...")
        create_all_tables(engine)
        logging.info("All tables created successfully (or already exist).")
    except SQLAlchemyError as e:
        logging.critical(f"An error occurred while creating database tables: {e}", exc_info=True)
        return 1

    if args.tank_id:
        with get_db() as db:
            if db is None:
                return 1
            if not save_tank(db, args.tank_id, product_service=args.product, diameter_m=args.diameter_m,
                             api_gravity_base=args.api_gravity):
                return 1
        logging.info(f"Tank {args.tank_id} registered.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
