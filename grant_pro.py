#!/usr/bin/env python3
"""
Grant a user unlimited videos (pro access) without going through billing.

Usage: python grant_pro.py <user_id>
"""

import sys

from config import Settings
from database import init_db, make_engine, make_session_factory
from models import SubscriptionStatus
from store import JobStore


def grant_pro(store: JobStore, user_id: str):
    existed = store.get_user(user_id) is not None
    user = store.set_subscription_status(user_id, SubscriptionStatus.ACTIVE, granted=True)
    if existed:
        print(f"Updated user {user.id} to pro (unlimited videos)")
    else:
        print(f"Created user {user.id} with pro access")
    return user


def main(argv):
    if len(argv) != 2:
        print("Usage: python grant_pro.py <user_id>")
        return 1
    engine = make_engine(Settings.from_env().database_url)
    init_db(engine)
    grant_pro(JobStore(make_session_factory(engine)), argv[1])
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
