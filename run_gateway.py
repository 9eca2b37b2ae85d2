#!/usr/bin/env python3
"""
Start the Agent Relay Gateway.

Usage:
    python run_gateway.py
"""
import logging

from dotenv import load_dotenv


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    import uvicorn

    from agent_relay import config
    from agent_relay.gateway.app import create_app

    host = config.gateway_host()
    port = config.gateway_port()

    print(f"Starting Agent Relay Gateway on {host}:{port}")
    print(f"Chat endpoint: http://{host}:{port}/chat (SSE)")
    print(f"Health check: http://{host}:{port}/health")
    print(f"Model: {config.llm_model_name()} via {config.llm_base_url() or 'OpenAI'}")
    print()

    uvicorn.run(create_app(), host=host, port=port)
