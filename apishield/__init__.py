"""apishield - CSRF, XSS and rate-limit protection for FastAPI APIs"""

__version__ = "1.0.0"
