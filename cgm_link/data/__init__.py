"""Data access and persistence layer."""

from cgm_link.data.dynamodb import get_dynamodb_client
from cgm_link.data.token_repository import get_token_repository

__all__ = [
    "get_dynamodb_client",
    "get_token_repository",
]
