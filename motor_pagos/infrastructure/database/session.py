"""
session.py
----------
Configuración de la conexión asíncrona a la base de datos.

Provee:
  - engine: motor SQLAlchemy async con pool configurado
  - AsyncSessionLocal: fábrica de sesiones
  - get_db: dependency de FastAPI para inyectar sesión en routers
  - init_db: crea tablas en desarrollo (en producción usa Alembic)

El orquestador hace commit al final de cada transición de estado,
así que la sesión del request NO hace commit automático al salir.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from motor_pagos.core.config import settings

# Fix asyncpg issue with sslmode
db_url = settings.DATABASE_URL
if "?sslmode=" in db_url:
    db_url = db_url.split("?sslmode=")[0]


def _engine_options(url: str) -> dict:
    """SQLite (pruebas, desarrollo local) no acepta parámetros de pool."""
    if url.startswith("sqlite"):
        return {"echo": settings.DEBUG}
    return {
        "echo":          settings.DEBUG,   # Loggea SQL solo en desarrollo
        "pool_pre_ping": True,             # Verifica conexión antes de usarla
        "pool_size":     10,               # Conexiones permanentes en el pool
        "max_overflow":  20,               # Conexiones extra bajo carga alta
    }


# ── Motor de base de datos ────────────────────────────────────────────
engine = create_async_engine(db_url, **_engine_options(db_url))

# ── Fábrica de sesiones ───────────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind             = engine,
    class_           = AsyncSession,
    expire_on_commit = False,
    autoflush        = False,
)


# ── Dependency para FastAPI ───────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Inyecta una sesión de base de datos en cada request.
    Si el request falla a mitad de una transición, se hace rollback
    de lo que no alcanzó a confirmarse.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ── Init para desarrollo ─────────────────────────────────────────────
async def init_db() -> None:
    """
    Crea todas las tablas definidas en models.py.
    Solo usar en desarrollo — en producción usar Alembic.
    Llamar desde el lifespan de main.py si settings.DEBUG es True.
    """
    from motor_pagos.domain.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
