#!/usr/bin/env python3
"""
Quick runner for the Intake Service
===================================

Usage:
    python -m lawpilot_intake.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Law Pilot Intake Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "lawpilot_intake.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
