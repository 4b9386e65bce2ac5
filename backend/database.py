from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_URI

if not MONGO_URI:
    raise RuntimeError("MONGODB_URI not set")

# connection is lazy; nothing is contacted until the first query
client = AsyncIOMotorClient(MONGO_URI)
db = client.get_default_database("escrow")


def get_db():
    return db
