import asyncio
import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from anyio import create_task_group

from coreason_oauth_client import CoreasonOAuthError, OAuthClientConfig, OAuthService


async def main() -> None:
    """
    Demonstrates the implicit flow with the async service.
    Includes:
    - Discovery document and JWKS loading
    - An event listener running in a TaskGroup
    - OpenTelemetry instrumentation (auto-applied in the service)
    """
    print(">>> Starting implicit flow example")

    config = OAuthClientConfig(
        issuer="https://auth.example.com",
        client_id="spa-client",
        redirect_uri="https://app.example.com/callback",
        scope="openid profile email",
        http_timeout=5.0,
    )

    async with OAuthService(config) as service:
        async with create_task_group() as tg:

            async def print_events() -> None:
                with service.subscribe() as events:
                    async for event in events:
                        print(f"    - event: {event.type}")

            tg.start_soon(print_events)

            try:
                await service.load_discovery_document()
            except CoreasonOAuthError as e:
                # Without a real Identity Provider this is where the example ends
                print(f">>> Expected failure (no real server): {e}")
                tg.cancel_scope.cancel()
                return

            print(f">>> Send the user agent to: {service.init_implicit_flow('return-to=/')}")
            fragment = input(">>> Paste the fragment of the callback URL: ")
            if await service.try_login(fragment):
                print(f">>> Logged in, claims: {service.get_identity_claims()}")
                print(f">>> Access token expires at {service.get_access_token_expiration()}")
            tg.cancel_scope.cancel()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
