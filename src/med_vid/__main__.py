"""Command line entry point serving the MedVid API with uvicorn."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="MedVid recording and publishing server")
    parser.add_argument("--config", default="data/config.json", help="Path to the JSON configuration file")
    parser.add_argument("--host", default=os.getenv("MEDVID_HOST", "0.0.0.0"), help="Interface to bind")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT") or 8000), help="Port to listen on")
    parser.add_argument("--camera", default=None, help="Override the configured camera backend")
    parser.add_argument("--data-dir", default=None, help="Override the configured data directory")
    parser.add_argument("--log-level", default="info", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if args.camera:
        os.environ["MEDVID_CAMERA"] = args.camera
    if args.data_dir:
        os.environ["MEDVID_DATA_DIR"] = args.data_dir

    import uvicorn

    from .app import create_app

    app = create_app(Path(args.config))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
