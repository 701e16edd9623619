import os

os.environ.setdefault("DJANGO_DEBUG", "1")
os.environ.setdefault("DJANGO_USE_SQLITE", "1")
os.environ.setdefault("DJANGO_ALLOW_SQLITE", "1")

from property_api.settings import *  # noqa: E402,F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}
AUTH_ENABLED = False
DEV_AUTH_ENABLED = False
