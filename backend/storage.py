import random
import time

from motor.motor_asyncio import AsyncIOMotorClient

from .config import DATABASE_NAME, MONGODB_URL

client: AsyncIOMotorClient = None

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


async def init_db():
    global client
    client = AsyncIOMotorClient(MONGODB_URL)


async def close_db_connection():
    global client
    if client:
        client.close()


def get_database():
    return client[DATABASE_NAME]


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Document ids are a base-36 millisecond timestamp followed by random digits."""
    return _to_base36(int(time.time() * 1000)) + _to_base36(random.getrandbits(52))
