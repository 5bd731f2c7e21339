#!/usr/bin/env python3
"""
One-shot helper: create the replanner tables without starting the server.
"""
import asyncio
from replanner.db import create_db_and_tables

if __name__ == "__main__":
    asyncio.run(create_db_and_tables())
    print("Replanner tables created.")
