import asyncio
import typing as t

from kvloader import KVLoader
from kvloader.utils.logging import setup_logging

USERS = {1: "ada", 2: "grace", 3: "edsger"}
POSTS = [
    {"id": 10, "author_id": 1},
    {"id": 11, "author_id": 2},
    {"id": 12, "author_id": 1},
    {"id": 13, "author_id": 3},
]


async def load_users(batch_key: str, ids: frozenset[int]) -> dict[int, t.Any]:
    print(f"loading {batch_key} {sorted(ids)}")
    await asyncio.sleep(0.1)
    return {user_id: USERS[user_id] for user_id in ids if user_id in USERS}


async def main():
    setup_logging()
    loader = KVLoader(load_users, name="users")
    for post in POSTS:
        loader.load("users", post["author_id"])

    await loader.arun()

    for post in POSTS:
        print(post["id"], loader.fetch("users", post["author_id"]).unwrap())


if __name__ == "__main__":
    asyncio.run(main())
