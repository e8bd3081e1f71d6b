"""
WSGI entry point for the Bazzarly API.

Production:
    gunicorn -c gunicorn.conf.py app:application

Development server:
    python app.py --config development --port 5000
"""

import argparse
import os

import structlog

from bazzarly import create_app

logger = structlog.get_logger(__name__)

application = create_app(os.getenv('FLASK_ENV'))


def main() -> None:
    parser = argparse.ArgumentParser(description='Bazzarly API development server')
    parser.add_argument('--host', default=os.getenv('HOST', '127.0.0.1'))
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '5000')))
    parser.add_argument(
        '--config',
        default=os.getenv('FLASK_ENV', 'development'),
        choices=['development', 'staging', 'production', 'testing'],
    )
    parser.add_argument('--debug', action='store_true')
    args = parser.parse_args()

    app = application
    if args.config != app.config['FLASK_ENV']:
        app = create_app(args.config)

    logger.info("Starting development server", host=args.host, port=args.port, environment=args.config)
    app.run(host=args.host, port=args.port, debug=args.debug or app.config['DEBUG'])


if __name__ == '__main__':
    main()
