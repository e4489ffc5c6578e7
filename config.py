import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'raksetu-coordination-secret-key'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///raksetu.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SMS backend (POST <url>/send-sms)
    SMS_BACKEND_URL = os.environ.get('SMS_BACKEND_URL') or 'http://localhost:3001'
    SMS_TIMEOUT = float(os.environ.get('SMS_TIMEOUT') or 10)

    CACHE_PERSISTENT = os.environ.get('CACHE_PERSISTENT', '0') == '1'
    CACHE_BACKGROUND_REFRESH = True

    SHORTAGE_MONITOR_INTERVAL = int(os.environ.get('SHORTAGE_MONITOR_INTERVAL') or 300)

    # Donors alerted about a new emergency
    MATCH_MAX_DISTANCE = float(os.environ.get('MATCH_MAX_DISTANCE') or 50)
    MATCH_LIMIT = int(os.environ.get('MATCH_LIMIT') or 20)
    NOTIFY_IN_BACKGROUND = True


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SMS_BACKEND_URL = 'http://sms.invalid'
    SMS_TIMEOUT = 1
    CACHE_PERSISTENT = False
    CACHE_BACKGROUND_REFRESH = False
    NOTIFY_IN_BACKGROUND = False
