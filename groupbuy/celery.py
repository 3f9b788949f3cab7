from celery import Celery

# Create Celery app
celery = Celery("groupbuy")

# Load configuration from groupbuy.config.celeryconfig module
celery.config_from_object("groupbuy.config.celeryconfig")
