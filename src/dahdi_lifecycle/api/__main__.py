# src/dahdi_lifecycle/api/__main__.py
"""
Main entry point for the lifecycle control API service.
"""

import argparse

from .server import run_server

def main():
    """Parse the optional configuration path and start the server"""
    parser = argparse.ArgumentParser(prog="dahdi-lifecycle-api",
                                     description="DAHDI lifecycle control API")
    parser.add_argument("--config", help="YAML configuration file")
    args = parser.parse_args()
    run_server(args.config)

if __name__ == "__main__":
    main()
