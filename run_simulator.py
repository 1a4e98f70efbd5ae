#!/usr/bin/env python3
"""
Runner script for the Dispatch Call Simulator.

Settings come from the environment (or a .env file) and the command line:

    python run_simulator.py --scenario "Kitchen fire, husband has burns" --cooperation 20

Press Enter to answer the ringing call; type q and Enter to hang up.
"""

import sys

from dispatch_call_simulator.cli import main


if __name__ == '__main__':
    sys.exit(main())
