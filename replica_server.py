#!/usr/bin/env python3
import argparse
import logging
import os
from typing import List, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from page_replica import (
    AssetStoreSweeper,
    Replicator,
    Settings,
    flatten_config,
    handle_replicate,
    load_config_file,
    settings_from_mapping,
)

DEFAULT_PORT = 3000


def create_app(
    settings: Optional[Settings] = None,
    replicator: Optional[Replicator] = None,
    start_sweeper: bool = True,
) -> Flask:
    settings = settings or (replicator.s if replicator is not None else Settings())
    replicator = replicator or Replicator(settings)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024
    app.extensions["page_replica"] = replicator

    if start_sweeper:
        sweeper = AssetStoreSweeper(
            replicator.store,
            retention_seconds=settings.asset_retention_seconds,
            interval_seconds=settings.sweep_interval_seconds,
        )
        sweeper.start()
        app.extensions["page_replica_sweeper"] = sweeper

    @app.post("/replicate")
    def replicate():
        payload = request.get_json(silent=True) or {}
        body, status = handle_replicate(replicator, payload)
        return jsonify(body), status

    @app.get("/stats")
    def stats():
        return jsonify(replicator.store.stats())

    @app.errorhandler(Exception)
    def internal_error(exc):
        if isinstance(exc, HTTPException):
            return exc
        logging.exception("Server error")
        return jsonify({"success": False, "error": "Internal server error"}), 500

    return app


def main(argv: Optional[List[str]] = None) -> None:
    p = argparse.ArgumentParser(description="Serve page replication over HTTP.")
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--host", type=str, default=os.environ.get("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.environ.get("PORT", DEFAULT_PORT)))
    p.add_argument("--no-sweep", action="store_true", help="do not clean up stale jobs")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    if args.config:
        settings = settings_from_mapping(flatten_config(load_config_file(args.config)))
    else:
        settings = Settings()

    app = create_app(settings, start_sweeper=not args.no_sweep)
    logging.info("Page replica server running on http://%s:%d", args.host, args.port)
    app.run(host=args.host, port=args.port, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
