import os
import asyncio
import logging
from datetime import timedelta
from typing import Optional

from couchbase.auth import PasswordAuthenticator
from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.options import ClusterOptions

logger = logging.getLogger(__name__)

# Environment variables
USERNAME = os.environ.get('COUCHBASE_USERNAME', '')
PASSWORD = os.environ.get('COUCHBASE_PASSWORD', '')
DEFAULT_BUCKET_NAME = os.environ.get('COUCHBASE_BUCKET', '')
DEFAULT_SCOPE_NAME = os.environ.get('COUCHBASE_SCOPE', '_default')
HOST = os.environ.get('COUCHBASE_HOST', '')
PROTOCOL = os.environ.get('COUCHBASE_PROTOCOL', '')
READY_TIMEOUT_SECONDS = int(os.environ.get('COUCHBASE_READY_TIMEOUT_SECONDS', '50'))

# Validation
errors = []
if not USERNAME:
    errors.append("COUCHBASE_USERNAME is missing or empty")
if not PASSWORD:
    errors.append("COUCHBASE_PASSWORD is missing or empty")
if not HOST:
    errors.append("COUCHBASE_HOST is missing or empty")
if not DEFAULT_BUCKET_NAME:
    errors.append("COUCHBASE_BUCKET is missing or empty")

valid_protocols = ('couchbase', 'couchbases')
if PROTOCOL not in valid_protocols:
    errors.append(f"COUCHBASE_PROTOCOL '{PROTOCOL}' is invalid. Must be one of {valid_protocols}")

if errors:
    raise ValueError("Invalid Couchbase Configuration:\n" + "\n".join(errors))

auth = PasswordAuthenticator(USERNAME, PASSWORD)

# Module-level cluster cache
_cluster: Optional[AsyncCluster] = None
_connect_lock = asyncio.Lock()


async def get_cluster(max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0) -> AsyncCluster:
    """
    Returns a cached Couchbase cluster connection.
    Creates a new connection if one doesn't exist, retrying with exponential
    backoff so the service survives starting before the cluster does.
    """
    global _cluster
    if _cluster is not None:
        return _cluster

    async with _connect_lock:
        if _cluster is not None:
            return _cluster

        url = PROTOCOL + "://" + HOST
        delay = initial_delay
        for attempt in range(1, max_retries + 1):
            try:
                cluster = await AsyncCluster.connect(url, ClusterOptions(auth))
                break
            except Exception as e:
                if attempt == max_retries:
                    raise
                logger.warning(
                    f"Couchbase connect attempt {attempt}/{max_retries} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)

        await cluster.wait_until_ready(timedelta(seconds=READY_TIMEOUT_SECONDS))
        _cluster = cluster
    return _cluster


async def check_connection():
    """
    Explicitly checks the connection to the Couchbase cluster.
    Useful for startup checks.
    """
    cluster = await get_cluster()
    await cluster.ping()


async def close_cluster() -> None:
    """Drop the cached connection (service shutdown)."""
    global _cluster
    if _cluster is not None:
        await _cluster.close()
        _cluster = None
