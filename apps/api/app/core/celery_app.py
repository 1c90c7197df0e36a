from __future__ import annotations

import uuid

from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("bookops_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="app.tasks.run_bookops_job")
def run_bookops_job(job_id: str, user_id: str, role: str, manager_name: str | None = None) -> str:
    from app.bookops.jobs import JobService
    from app.bookops.service import ActorUser
    from app.core.database import SessionLocal
    from app.core.rbac import Role

    actor_user = ActorUser(user_id=user_id, role=Role(role), manager_name=manager_name)
    session = SessionLocal()
    try:
        job = JobService().run_job_sync(session, actor_user, uuid.UUID(job_id))
        return job.status
    finally:
        session.close()
