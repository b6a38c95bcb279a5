#!/usr/bin/env python
"""
Seed the stored Jira settings and a disabled default schedule from the environment.
Run with: cd backend; python scripts/seed_settings.py
Requires JIRA_HOST, JIRA_EMAIL, JIRA_API_TOKEN and ENCRYPTION_KEY in .env.
"""

from jira_sync.config import settings
from jira_sync.database import SessionLocal
from jira_sync.models.jira_setting import JiraSetting
from jira_sync.models.schedule import Schedule
from jira_sync.utils.encrypt import encrypt_data


def seed_settings():
    db = SessionLocal()
    try:
        if db.query(JiraSetting).first():
            print("Jira settings already exist. Skipping seed.")
        elif not (settings.jira_host and settings.jira_email and settings.jira_api_token):
            print("JIRA_HOST, JIRA_EMAIL and JIRA_API_TOKEN must be set. Skipping Jira settings.")
        else:
            db.add(JiraSetting(
                jira_host=settings.jira_host.rstrip("/"),
                jira_email=settings.jira_email,
                api_token=encrypt_data(settings.jira_api_token),
                api_version=settings.jira_api_version,
                project_keys=settings.jira_project_keys_list,
            ))
            print(f"Created Jira settings for {settings.jira_host} (projects: {settings.jira_project_keys_list})")

        if not db.query(Schedule).first():
            db.add(Schedule(cron="0 */6 * * *", timezone="UTC", concurrency="skip", enabled=False))
            print("Created disabled default schedule (every 6 hours)")

        db.commit()
    except ValueError as e:
        db.rollback()
        print(f"Error seeding settings: {e}")
    finally:
        db.close()


if __name__ == '__main__':
    seed_settings()
