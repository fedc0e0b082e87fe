from __future__ import annotations

import argparse

from .app import create_admin_app, create_storefront_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run item customizer services")
    parser.add_argument("service", choices=["admin", "storefront"])
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--db", default=None)
    args = parser.parse_args()

    if args.service == "admin":
        app = create_admin_app(args.db)
    else:
        app = create_storefront_app(args.db)

    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
