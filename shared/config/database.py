from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import os
from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession

load_dotenv()

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost") # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "dispatch")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# Each service owns one schema to simulate microservice isolation
SERVICE_SCHEMAS = ("order_schema", "delivery_schema")

IS_SQLITE = DATABASE_URL.startswith("sqlite")

_engine_options = {"echo": os.getenv("SQL_ECHO", "false").lower() == "true"}
if IS_SQLITE:
    # SQLite has no schemas; connections are not shared across event loops
    _engine_options["poolclass"] = NullPool
    _engine_options["execution_options"] = {
        "schema_translate_map": {schema: None for schema in SERVICE_SCHEMAS}
    }

engine = create_async_engine(DATABASE_URL, **_engine_options)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def create_service_schema(schema: str):
    """Creates the service schema (Postgres only) and every registered table."""
    async with engine.begin() as conn:
        if not IS_SQLITE:
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(Base.metadata.create_all)
