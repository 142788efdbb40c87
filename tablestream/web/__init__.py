"""WSGI front-ends for querying tables and running actions."""