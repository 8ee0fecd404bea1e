#!/usr/bin/env python3
"""
Basic relay example - run the webhook relay with hardcoded developers.

Usage:
    python examples/basic_relay.py
"""

import asyncio

from webhook_balancer.config import EndpointConfig
from webhook_balancer.proxy import BackendRegistry, Forwarder, RelayServer, Router


async def main():
    # Developers would normally come from config.yaml or DEVELOPER_* env vars
    registry = BackendRegistry.from_endpoints([
        EndpointConfig(backend="alice", service="slack_app", url="https://alice-slack-app.ngrok-free.app"),
        EndpointConfig(backend="alice", service="slack_oauth", url="https://alice-slack-oauth.ngrok-free.app"),
        EndpointConfig(backend="bob", service="slack_app", url="https://bob-slack-app.ngrok-free.app"),
    ])

    router = Router(
        registry,
        forwarder=Forwarder(attempt_timeout=2.8, overall_timeout=3.0, verbose=True),
        strategy="sticky",
        verbose=True,
    )
    server = RelayServer(router, port=6000)

    await server.start()

    print("\nRelay is running. Use Ctrl+C to stop.")
    print("Test with:")
    print('  curl http://localhost:6000/health')
    print('  curl http://localhost:6000/load-balancer')

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        await server.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down...")
