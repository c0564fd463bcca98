from wms_sync import create_app

app = create_app()

# Every worker process starts its own scheduler, so run a single worker:
#   gunicorn -w 1 wsgi:app
