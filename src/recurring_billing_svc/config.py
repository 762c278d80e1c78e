import os

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./billing.db')

# Stripe is optional; without a key only manual renewals are possible.
STRIPE_API_KEY = os.getenv('STRIPE_API_KEY')
STRIPE_ENDPOINT_SECRET = os.getenv('STRIPE_ENDPOINT_SECRET')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

WORKER_POLL_INTERVAL = float(os.getenv('WORKER_POLL_INTERVAL', '10'))
WORKER_BATCH_SIZE = int(os.getenv('WORKER_BATCH_SIZE', '50'))
TASK_MAX_ATTEMPTS = int(os.getenv('TASK_MAX_ATTEMPTS', '3'))
TASK_RETRY_DELAY = int(os.getenv('TASK_RETRY_DELAY', '300'))
