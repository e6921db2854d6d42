"""DynamoDB utilities and table definitions."""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from cgm_link.utils.config import get_settings

logger = logging.getLogger(__name__)


class DynamoDBClient:
    """DynamoDB client wrapper with table utilities."""

    def __init__(self):
        """Initialize the DynamoDB client."""
        settings = get_settings()
        self.tokens_table = settings.dynamodb_tokens_table
        connection = dict(
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=(
                settings.aws_secret_access_key.get_secret_value()
                if settings.aws_secret_access_key
                else None
            ),
        )
        self.client = boto3.client("dynamodb", **connection)
        self.resource = boto3.resource("dynamodb", **connection)

    def create_tokens_table(self, wait: bool = True) -> Dict[str, Any]:
        """
        Create the Dexcom tokens table if it doesn't exist.

        One row per user, keyed by ``user_id``.

        Args:
            wait: Wait for the table to be created if True

        Returns:
            Dict: Table description
        """
        try:
            table = self.client.create_table(
                TableName=self.tokens_table,
                KeySchema=[
                    {"AttributeName": "user_id", "KeyType": "HASH"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": "user_id", "AttributeType": "S"},
                ],
                BillingMode="PAY_PER_REQUEST",
            )

            if wait:
                waiter = self.client.get_waiter("table_exists")
                waiter.wait(TableName=self.tokens_table)

            return table

        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceInUseException":
                logger.info(f"Table {self.tokens_table} already exists.")
                return self.client.describe_table(TableName=self.tokens_table)
            logger.error(f"Error creating table {self.tokens_table}: {e}")
            raise

    def create_all_tables(self, wait: bool = True) -> Dict[str, Dict[str, Any]]:
        """
        Create all required tables if they don't exist.

        Args:
            wait: Wait for the tables to be created if True

        Returns:
            Dict: Table descriptions keyed by table name
        """
        return {self.tokens_table: self.create_tokens_table(wait)}

    def get_table(self, table_name: str):
        """
        Get a DynamoDB table resource.

        Args:
            table_name: Name of the table

        Returns:
            Table: DynamoDB table resource
        """
        return self.resource.Table(table_name)

    def put_item(
        self,
        table_name: str,
        item: Dict[str, Any],
        condition_expression: Any = None,
    ) -> Dict[str, Any]:
        """
        Insert or replace an item in a DynamoDB table.

        Args:
            table_name: Name of the table
            item: Item to write
            condition_expression: Optional condition; the write fails with
                ``ConditionalCheckFailedException`` if it does not hold

        Returns:
            Dict: Response from DynamoDB
        """
        table = self.get_table(table_name)
        put_kwargs: Dict[str, Any] = {"Item": item}
        if condition_expression is not None:
            put_kwargs["ConditionExpression"] = condition_expression
        return table.put_item(**put_kwargs)

    def get_item(self, table_name: str, key: Dict[str, Any], consistent_read: bool = True) -> Optional[Dict[str, Any]]:
        """
        Get an item from a DynamoDB table.

        Args:
            table_name: Name of the table
            key: Key to get
            consistent_read: Use a strongly consistent read if True

        Returns:
            Dict: Item from DynamoDB or None if not found
        """
        table = self.get_table(table_name)
        response = table.get_item(Key=key, ConsistentRead=consistent_read)
        return response.get("Item")

    def delete_item(
        self,
        table_name: str,
        key: Dict[str, Any],
        condition_expression: Any = None,
    ) -> Dict[str, Any]:
        """
        Delete an item from a DynamoDB table.

        Args:
            table_name: Name of the table
            key: Key to delete
            condition_expression: Optional condition guarding the delete

        Returns:
            Dict: Response from DynamoDB
        """
        table = self.get_table(table_name)
        delete_kwargs: Dict[str, Any] = {"Key": key}
        if condition_expression is not None:
            delete_kwargs["ConditionExpression"] = condition_expression
        return table.delete_item(**delete_kwargs)


def is_conditional_check_failure(error: ClientError) -> bool:
    """Whether *error* is DynamoDB rejecting a conditional write."""
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


# Singleton instance for reuse
_dynamodb_client: Optional[DynamoDBClient] = None


def get_dynamodb_client() -> DynamoDBClient:
    """
    Get a singleton instance of the DynamoDB client.

    Returns:
        DynamoDBClient: DynamoDB client
    """
    global _dynamodb_client
    if _dynamodb_client is None:
        _dynamodb_client = DynamoDBClient()
    return _dynamodb_client
