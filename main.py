#!/usr/bin/env python3
"""
Main entry point for the Dashboard Agent API.
Handles server startup with environment-based configuration.
"""
import uvicorn
from dashboard_agent.config import APP_PORT

if __name__ == "__main__":
    print(f"🚀 Starting Dashboard Agent API on port {APP_PORT}")
    uvicorn.run(
        "dashboard_agent.api:app",
        host="0.0.0.0",
        port=APP_PORT,
        reload=True,
        log_level="info"
    )
