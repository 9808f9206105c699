from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(prog="flowrunner", description="Serve the workflow execution API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    # uvicorn turns SIGINT/SIGTERM into a lifespan shutdown, which stops the queue processor.
    uvicorn.run("flowrunner.api:create_app", factory=True, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
