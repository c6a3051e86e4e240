"""REST clients for BC, Graph and Dataverse.

One ClientBundle is built per request and passed explicitly to the engine
components; nothing here is a module-level singleton.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from src.tasksync.clients.bc import BcClient
from src.tasksync.clients.dataverse import DataverseClient
from src.tasksync.clients.graph import GraphClient
from src.tasksync.config import Settings

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


@dataclass
class ClientBundle:
    bc: BcClient
    graph: GraphClient
    dataverse: DataverseClient


@asynccontextmanager
async def open_client_bundle(settings: Settings) -> AsyncGenerator[ClientBundle, None]:
    """Create the three clients over one httpx.AsyncClient and close it afterwards."""
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as http:
        yield ClientBundle(
            bc=BcClient.from_settings(http, settings),
            graph=GraphClient.from_settings(http, settings),
            dataverse=DataverseClient.from_settings(http, settings),
        )
