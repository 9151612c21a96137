"""
boto3 client construction shared by the KMS and Secrets Manager adapters
"""

import boto3
from botocore.client import BaseClient
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, ConnectTimeoutError, ReadTimeoutError

from credential_controller.config import Config

# Timeouts are reported, never retried within a run
TIMEOUT_ERRORS = (ConnectTimeoutError, ReadTimeoutError)


def build_client(service_name: str, region: str = None) -> BaseClient:
    """
    Create a boto3 client with caller-supplied timeouts and a single attempt

    Args:
        service_name: AWS service, e.g. "kms" or "secretsmanager"
        region: AWS region, defaults to Config.AWS_REGION

    Returns:
        boto3 client
    """
    boto_config = BotoConfig(
        region_name=region or Config.AWS_REGION,
        connect_timeout=Config.AWS_CONNECT_TIMEOUT,
        read_timeout=Config.AWS_READ_TIMEOUT,
        retries={"mode": "standard", "total_max_attempts": 1},
    )
    return boto3.client(service_name, config=boto_config)


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')
