# hls_ingest/aws_utils.py
import logging
from typing import Optional

import boto3
from botocore.config import Config

from hls_ingest.settings import IngestSettings

log = logging.getLogger(__name__)


def get_boto_session(settings: IngestSettings, session: Optional[boto3.Session] = None) -> boto3.Session:
    if session:
        return session
    profile_name = settings.aws_profile
    region_name = settings.aws_region
    if profile_name and region_name:
        log.info(f"Creating new Boto3 session with profile: {profile_name}, region: {region_name}")
        return boto3.Session(profile_name=profile_name, region_name=region_name)
    if profile_name:
        log.info(f"Creating new Boto3 session with profile: {profile_name} (default region)")
        return boto3.Session(profile_name=profile_name)
    if region_name:
        log.info(f"Creating new Boto3 session with region: {region_name} (default profile)")
        return boto3.Session(region_name=region_name)
    log.info("Creating new Boto3 session with default profile and region.")
    return boto3.Session()


def _client_config(read_timeout: float) -> Config:
    return Config(
        connect_timeout=10,
        read_timeout=max(int(read_timeout), 1),
        retries={"max_attempts": 3, "mode": "standard"},
    )


def make_s3_client(settings: IngestSettings, session: boto3.Session):
    return session.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        config=_client_config(min(settings.upload_timeout, 120)),
    )


def make_dynamodb(settings: IngestSettings, session: boto3.Session):
    """Return (resource, low-level client) for the catalog tables."""
    config = _client_config(30)
    resource = session.resource("dynamodb", endpoint_url=settings.dynamodb_endpoint_url, config=config)
    client = session.client("dynamodb", endpoint_url=settings.dynamodb_endpoint_url, config=config)
    return resource, client


def make_cloudwatch_client(session: boto3.Session):
    return session.client("cloudwatch")
