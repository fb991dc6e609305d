from celery import Celery

from creditledger.logging import configure_logging
from creditledger.scheduler_config import build_beat_schedule, get_celery_config

configure_logging()

celery_app = Celery("creditledger", include=["creditledger.tasks"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
