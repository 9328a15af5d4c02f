#!/usr/bin/env python3
"""
Feed Aggregator - Startup Script
Starts the aggregator with the configuration in config.json (or the path
given on the command line).
"""

import sys

from feed_aggregator.__main__ import main


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
