"""
hub.py: the broadcast hub shared by the build runner and connected pages.

The hub owns the set of connected clients and the last unresolved error.
Every mutation and every fan-out happens under one lock, so a client sees
messages in the order they were recorded and a page that connects while
a build is broken is told about it straight away. A client that does not
take a message within ``SEND_TIMEOUT`` is dropped, so one stalled peer
holds everyone else up for at most that long.

A client is anything with an awaitable ``send(text)``.
"""

import asyncio
import logging

from .protocol import Failure, Update, encode_message


logger = logging.getLogger(__name__)

# Seconds a single client may take to accept a message before it is dropped
SEND_TIMEOUT = 5.0


async def _send(client, text):
    await asyncio.wait_for(client.send(text), SEND_TIMEOUT)


class Hub:

    def __init__(self):
        self.clients = set()
        self.last_error = None
        self._lock = asyncio.Lock()

    async def record_and_broadcast(self, result):
        """Remember ``result`` and send it to every connected client.

        A ``Failure`` becomes the remembered error, an ``Update`` clears it.
        Clients whose send fails are dropped; nothing is raised.
        """
        text = encode_message(result)
        async with self._lock:
            if isinstance(result, Failure):
                self.last_error = result
                logger.error("Reload failed")
            elif isinstance(result, Update):
                self.last_error = None
                logger.info("Reloaded by %s", result.path)

            clients = list(self.clients)
            outcomes = await asyncio.gather(
                *(_send(client, text) for client in clients),
                return_exceptions=True,
            )
            for client, outcome in zip(clients, outcomes):
                if isinstance(outcome, Exception):
                    self._drop(client, outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome

    async def client_connected(self, client):
        """Register ``client`` and replay the remembered error to it, if any."""
        async with self._lock:
            self.clients.add(client)
            logger.debug("Client connected (%d total)", len(self.clients))
            if self.last_error is not None:
                try:
                    await _send(client, encode_message(self.last_error))
                except Exception as e:
                    self._drop(client, e)

    async def client_disconnected(self, client):
        async with self._lock:
            if client in self.clients:
                self.clients.discard(client)
                logger.debug("Client disconnected (%d total)", len(self.clients))

    def _drop(self, client, error):
        self.clients.discard(client)
        logger.info("Dropped client after failed send: %s", error)
