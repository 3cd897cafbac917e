"""Temporal client factory.

Connects to Temporal Cloud (API key + TLS) or a local dev server, using
settings from the environment.
"""

import os
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client


LOCAL_ENDPOINT = "localhost:7233"


async def get_temporal_client() -> Client:
    """Create and return a connected Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Server address (default "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: Temporal Cloud API key; enables TLS when set

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If a Cloud endpoint is configured without an API key
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", LOCAL_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")

    if endpoint.endswith(".tmprl.cloud:7233") and not api_key:
        raise ValueError(
            "TEMPORAL_API_KEY environment variable not set. "
            "Set it to your Temporal Cloud API key"
        )

    if api_key:
        return await Client.connect(
            target_host=endpoint,
            namespace=namespace,
            tls=True,
            api_key=api_key,
        )

    return await Client.connect(target_host=endpoint, namespace=namespace)
