"""
Configuration for the visit collector.

Values come from the environment, with a local .env file loaded first
(python-dotenv). ``create_app`` applies ``Config`` and then any mapping
passed by the caller, which is how the test suite swaps the database.
"""

import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Base configuration"""

    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///analytics.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # IANA zone used to bucket visits into days; unset means server local time
    ANALYTICS_TIMEZONE = os.getenv('ANALYTICS_TIMEZONE') or None

    # Shape check applied by the HTTP layer before calling into the core
    SITE_UUID_MIN_LENGTH = int(os.getenv('SITE_UUID_MIN_LENGTH', 8))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

