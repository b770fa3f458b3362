"""rollmodel_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for later invocations of the
same warm Lambda container.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from rollmodel_shared.config import DYNAMODB_REGION, SSM_REGION

_ddb = None
_ssm = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _get_ssm(region: Optional[str] = None):
    """Get (or create) the SSM client singleton."""
    global _ssm
    if _ssm is None:
        _ssm = boto3.client(
            "ssm",
            region_name=region or SSM_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _ssm
