"""Simple example showing basic run dispatch."""

import asyncio

from paywire import RunDispatcher, get_repository


async def main():
    """Basic run dispatch example."""
    dispatcher = RunDispatcher(get_repository())

    # Define the run's steps; candidates are tried in order
    dispatcher.add_step(
        "step_1_price_discovery",
        candidates=[
            ("weather-api", "0xPRIMARY_TX_HASH"),
            ("weather-api-fallback", "0xFALLBACK_TX_HASH"),
        ],
        payload={"location": "NYC"},
        retry_policy={"maxRetries": 2, "backoffMs": 200},
    )
    dispatcher.add_step(
        "step_2_confirmation",
        candidates=[("weather-api", "0xSECOND_STEP_TX_HASH")],
        payload={"location": "NYC", "mode": "confirm"},
    )

    accepted = await dispatcher.dispatch("wf_agent_commerce_demo")

    print(f"✅ Run queued successfully!")
    print(f"📋 Run ID: {accepted.run_id}")
    print(f"🔗 Status: {accepted.status}")


if __name__ == "__main__":
    asyncio.run(main())
