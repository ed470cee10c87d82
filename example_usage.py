#!/usr/bin/env python3
"""Example usage of the stateless calculator MCP server.

Start the server first with ``python main.py``.
"""

import asyncio
import json

from calculator_server.client import RPCError, StatelessClient


async def example_calculation(client: StatelessClient):
    """Example: a plain calculation answered with a single JSON body."""
    print("Calculation Example")
    result = await client.call_tool("calculate", {"a": 7, "b": 6, "op": "multiply"})
    print(result["content"][0]["text"] + "\n")


async def example_streaming(client: StatelessClient):
    """Example: progress notifications delivered over an event stream."""
    print("Progress Example")

    def on_progress(params):
        print(f"  progress {params['progress']:.0%}: {params.get('message', '')}")

    result = await client.call_tool("demo_progress", on_progress=on_progress)
    print(result["content"][0]["text"] + "\n")


async def example_error(client: StatelessClient):
    """Example: division by zero comes back as an invalid-params error."""
    print("Error Example")
    try:
        await client.call_tool("calculate", {"a": 1, "b": 0, "op": "divide"})
    except RPCError as e:
        print(f"  code={e.code} message={e.message}\n")


async def example_resources(client: StatelessClient):
    """Example: reading resources and prompts."""
    print("Resources Example")
    constants = await client.read_resource("calculator://constants")
    print(json.dumps(json.loads(constants["contents"][0]["text"]), indent=2))

    prompt = await client.get_prompt("generate-problems", {"topic": "fractions", "count": "3"})
    print(prompt["messages"][0]["content"]["text"].splitlines()[0] + "\n")


async def main():
    """Run all examples."""
    print("Stateless Calculator MCP Server - Usage Examples")
    print("=" * 50)
    print()

    async with StatelessClient("http://127.0.0.1:1071") as client:
        info = await client.initialize()
        print(f"Connected to {info['serverInfo']['name']} {info['serverInfo']['version']}\n")

        await example_calculation(client)
        await example_streaming(client)
        await example_error(client)
        await example_resources(client)

    print("Every call above was served by a fresh engine; nothing was kept between them.")


if __name__ == "__main__":
    asyncio.run(main())
