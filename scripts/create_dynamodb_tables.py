#!/usr/bin/env python
"""Create the Dexcom token table for local development."""

import logging
import sys

from cgm_link.data.dynamodb import get_dynamodb_client
from cgm_link.utils.config import get_settings
from cgm_link.utils.logging_utils import setup_json_logging

logger = logging.getLogger("create_dynamodb_tables")


def main() -> int:
    """Create all DynamoDB tables and report their status."""
    settings = get_settings()
    setup_json_logging(settings.log_level)
    try:
        client = get_dynamodb_client()
        logger.info("Creating DynamoDB tables...", extra={"endpoint": settings.dynamodb_endpoint})

        result = client.create_all_tables()

        for table_name, response in result.items():
            description = response.get("TableDescription") or response.get("Table") or {}
            status = description.get("TableStatus", "UNKNOWN")
            logger.info(f"Table '{table_name}' status: {status}")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        return 1
    logger.info("All tables created successfully.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
