"""Repository for Dexcom OAuth token records.

The token record is the only state shared between sessions of the same user,
so every write that follows a refresh is conditional on the refresh token
that was spent still being the stored one.
"""

import logging
import threading
from typing import Dict, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from cgm_link.data.dynamodb import get_dynamodb_client, is_conditional_check_failure
from cgm_link.models.tokens import TokenRecord, utcnow
from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import TokenConflictError

logger = logging.getLogger(__name__)


class TokenRepository:
    """Repository for token records in DynamoDB."""

    def __init__(self, dynamodb=None, table_name: Optional[str] = None):
        """Initialize the repository."""
        self.dynamodb = dynamodb or get_dynamodb_client()
        self.table_name = table_name or get_settings().dynamodb_tokens_table

    def get(self, user_id: str) -> Optional[TokenRecord]:
        """
        Get the token record for a user.

        Args:
            user_id: The user ID

        Returns:
            Optional[TokenRecord]: The record, or None if the user is not connected
        """
        try:
            item = self.dynamodb.get_item(self.table_name, {"user_id": user_id})
        except ClientError as e:
            logger.error(f"Error getting token record: {e}", extra={"user_id": user_id})
            raise
        if item:
            return TokenRecord.from_dynamodb_item(item)
        return None

    def create(self, record: TokenRecord) -> TokenRecord:
        """
        Create a token record, replacing whatever was stored for the user.

        Args:
            record: The record to write

        Returns:
            TokenRecord: The written record
        """
        try:
            self.dynamodb.put_item(self.table_name, record.to_dynamodb_item())
            return record
        except ClientError as e:
            logger.error(f"Error creating token record: {e}", extra={"user_id": record.user_id})
            raise

    def update(self, record: TokenRecord) -> TokenRecord:
        """
        Overwrite the record for a user, stamping ``updated_at``.

        Args:
            record: The record to write

        Returns:
            TokenRecord: The written record
        """
        record = record.model_copy(update={"updated_at": utcnow()})
        return self.create(record)

    def replace_if_refresh_token(self, record: TokenRecord, expected_refresh_token: str) -> TokenRecord:
        """
        Write a rotated token pair only if the stored refresh token is still *expected_refresh_token*.

        Args:
            record: The new record
            expected_refresh_token: The refresh token that was exchanged for *record*

        Returns:
            TokenRecord: The written record

        Raises:
            TokenConflictError: If another writer rotated or deleted the record first
        """
        record = record.model_copy(update={"updated_at": utcnow()})
        try:
            self.dynamodb.put_item(
                self.table_name,
                record.to_dynamodb_item(),
                condition_expression=Attr("refresh_token").eq(expected_refresh_token),
            )
            return record
        except ClientError as e:
            if is_conditional_check_failure(e):
                raise TokenConflictError("Token record changed during refresh")
            logger.error(f"Error replacing token record: {e}", extra={"user_id": record.user_id})
            raise

    def delete(self, user_id: str) -> bool:
        """
        Delete the record for a user.

        Args:
            user_id: The user ID

        Returns:
            bool: True if the deletion was successful
        """
        try:
            self.dynamodb.delete_item(self.table_name, {"user_id": user_id})
            return True
        except ClientError as e:
            logger.error(f"Error deleting token record: {e}", extra={"user_id": user_id})
            raise

    def delete_if_refresh_token(self, user_id: str, expected_refresh_token: str) -> bool:
        """
        Delete the record only if it still holds *expected_refresh_token*.

        Returns:
            bool: False if a newer token pair (or no record) was stored
        """
        try:
            self.dynamodb.delete_item(
                self.table_name,
                {"user_id": user_id},
                condition_expression=Attr("refresh_token").eq(expected_refresh_token),
            )
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            logger.error(f"Error deleting token record: {e}", extra={"user_id": user_id})
            raise


class InMemoryTokenRepository:
    """Process-local token store with the same conditional-write semantics."""

    def __init__(self):
        self._items: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[TokenRecord]:
        with self._lock:
            item = self._items.get(user_id)
        return TokenRecord.from_dynamodb_item(item) if item else None

    def create(self, record: TokenRecord) -> TokenRecord:
        with self._lock:
            self._items[record.user_id] = record.to_dynamodb_item()
        return record

    def update(self, record: TokenRecord) -> TokenRecord:
        return self.create(record.model_copy(update={"updated_at": utcnow()}))

    def replace_if_refresh_token(self, record: TokenRecord, expected_refresh_token: str) -> TokenRecord:
        record = record.model_copy(update={"updated_at": utcnow()})
        with self._lock:
            current = self._items.get(record.user_id)
            if current is None or current["refresh_token"] != expected_refresh_token:
                raise TokenConflictError("Token record changed during refresh")
            self._items[record.user_id] = record.to_dynamodb_item()
        return record

    def delete(self, user_id: str) -> bool:
        with self._lock:
            self._items.pop(user_id, None)
        return True

    def delete_if_refresh_token(self, user_id: str, expected_refresh_token: str) -> bool:
        with self._lock:
            current = self._items.get(user_id)
            if current is None or current["refresh_token"] != expected_refresh_token:
                return False
            del self._items[user_id]
        return True

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


# Singleton instance
_token_repository = None


def get_token_repository():
    """
    Get a singleton instance of the configured token repository.

    Returns:
        TokenRepository | InMemoryTokenRepository: The token repository
    """
    global _token_repository
    if _token_repository is None:
        if get_settings().token_store_backend == "memory":
            _token_repository = InMemoryTokenRepository()
        else:
            _token_repository = TokenRepository()
    return _token_repository


def reset_token_repository() -> None:
    """Drop the cached repository so the next call re-reads settings."""
    global _token_repository
    _token_repository = None
