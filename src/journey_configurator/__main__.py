from __future__ import annotations

import argparse
import json
import sys

from .app import create_app
from .flow_validation import validate_flow
from .models import FlowParseError


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the journey configuration service")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--db", default="./journeys.db")

    validate = subparsers.add_parser("validate", help="validate a flow JSON document")
    validate.add_argument("path")

    args = parser.parse_args()

    if args.command == "validate":
        try:
            with open(args.path, encoding="utf-8") as handle:
                result = validate_flow(json.load(handle))
        except (OSError, json.JSONDecodeError, FlowParseError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(2)
        print(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.is_valid else 1)

    if args.command != "serve":
        parser.print_help()
        sys.exit(2)

    app = create_app(args.db)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
