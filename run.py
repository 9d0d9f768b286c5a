#!/usr/bin/env python
"""Entry point for outreach CLI."""

# Load .env file before anything else
from dotenv import load_dotenv
load_dotenv()

from recruit_outreach.core.cli import main

if __name__ == "__main__":
    main()
