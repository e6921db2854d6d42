"""Configuration utilities for the cgm-link service."""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

import boto3
from botocore.exceptions import ClientError
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AwsSecretsManager:
    """Utility class for retrieving secrets from AWS Secrets Manager."""

    def __init__(self, region_name: Optional[str] = None):
        """
        Initialize AWS Secrets Manager client.

        Args:
            region_name: AWS region name
        """
        self.region_name = region_name or os.environ.get("AWS_REGION", "us-east-1")
        self.client = boto3.client(
            service_name="secretsmanager",
            region_name=self.region_name,
            endpoint_url=os.environ.get("AWS_SECRETSMANAGER_ENDPOINT"),
        )

    def get_secret(self, secret_name: str) -> Dict[str, Any]:
        """
        Retrieve a secret from AWS Secrets Manager.

        Args:
            secret_name: Name or ARN of the secret

        Returns:
            Dict[str, Any]: Secret values as a dictionary

        Raises:
            ClientError: If the secret cannot be retrieved outside development
        """
        try:
            response = self.client.get_secret_value(SecretId=secret_name)
            if "SecretString" in response:
                return json.loads(response["SecretString"])
            raise ValueError("Binary secrets are not supported")
        except ClientError:
            if os.environ.get("SERVICE_ENV", "development") == "development":
                return {}
            raise


class Settings(BaseSettings):
    """Application settings loaded from environment variables and secrets."""

    # Service configuration
    service_env: str = Field("development", description="Service environment (development, staging, production)")
    log_level: str = Field("INFO", description="Logging level")
    log_output: Literal["stdout", "file"] = Field("stdout", description="Where JSON logs are written")
    log_file_path: Optional[str] = Field(None, description="Log file path when log_output is 'file'")
    cors_origins: List[str] = Field(["*"], description="CORS allowed origins")
    secret_name: Optional[str] = Field(None, description="AWS Secrets Manager secret name")

    # AWS Configuration
    aws_region: str = Field("us-east-1", description="AWS region")
    aws_access_key_id: Optional[str] = Field(None, description="AWS access key ID")
    aws_secret_access_key: Optional[SecretStr] = Field(None, description="AWS secret access key")

    # Token store
    token_store_backend: Literal["dynamodb", "memory"] = Field("dynamodb", description="Token store backend")
    dynamodb_endpoint: Optional[str] = Field(None, description="DynamoDB endpoint URL, primarily for local development")
    dynamodb_tokens_table: str = Field("dexcom_tokens", description="DynamoDB table for Dexcom OAuth tokens")

    # Dexcom API Configuration. Absence is only an error when an OAuth operation runs.
    dexcom_client_id: Optional[str] = Field(None, description="Dexcom API client ID")
    dexcom_client_secret: Optional[SecretStr] = Field(None, description="Dexcom API client secret")
    dexcom_redirect_uri: Optional[str] = Field(None, description="Dexcom OAuth redirect URI, must match the registered value")
    dexcom_api_base_url: str = Field("https://api.dexcom.com", description="Dexcom API base URL")
    request_timeout_seconds: int = Field(30, description="HTTP request timeout in seconds")

    # Polling pipeline
    data_source: Literal["dexcom", "simulated"] = Field("dexcom", description="Glucose data source for new sessions")
    token_refresh_skew_seconds: int = Field(300, description="Refresh access tokens this long before they expire", ge=0)
    poll_interval_seconds: float = Field(300, description="Interval between glucose polls", gt=0)
    history_window_hours: int = Field(24, description="Retention of the in-memory reading history", ge=1)

    # Session authentication
    jwt_secret_key: SecretStr = Field(SecretStr("dev-secret-change-me"), description="HS256 key for session JWTs")
    jwt_issuer: str = Field("cgm-link", description="Expected JWT issuer")
    jwt_audience: str = Field("cgm-link-users", description="Expected JWT audience")

    # Metrics endpoint credentials
    metrics_user: str = Field("metrics", description="Basic auth user for /metrics")
    metrics_pass: SecretStr = Field(SecretStr("metrics"), description="Basic auth password for /metrics")

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """
        Validate CORS origins.

        Args:
            v: List of CORS origins

        Returns:
            List[str]: Validated list of CORS origins
        """
        if len(v) == 1 and v[0] == "*":
            return v

        if len(v) == 1 and "," in v[0]:
            v = v[0].split(",")

        validated = []
        for origin in v:
            origin = origin.strip()
            if not origin.startswith(("http://", "https://")):
                origin = f"https://{origin}"
            validated.append(origin)
        return validated

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def _load_secrets(self) -> None:
        """Load secrets from AWS Secrets Manager if configured."""
        if not self.secret_name or self.service_env == "development":
            return

        secrets_manager = AwsSecretsManager(self.aws_region)
        secrets = secrets_manager.get_secret(self.secret_name)

        for key, value in secrets.items():
            key_lower = key.lower()
            if hasattr(self, key_lower):
                field_info = self.__class__.model_fields.get(key_lower)
                if field_info and "SecretStr" in str(field_info.annotation) and isinstance(value, str):
                    value = SecretStr(value)
                setattr(self, key_lower, value)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore",
    )

    def __init__(self, *args, **kwargs):
        """Initialize settings with secrets."""
        super().__init__(*args, **kwargs)
        self._load_secrets()

        # Set development fallbacks
        if self.service_env == "development":
            if not self.dynamodb_endpoint and self.token_store_backend == "dynamodb":
                self.dynamodb_endpoint = "http://localhost:8000"


@lru_cache()
def get_settings() -> Settings:
    """
    Create and cache settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
