# Overview: WSGI entry point; FLASK_APP target for the CLI and app servers.

from fiscalpos import create_app

app = create_app()
