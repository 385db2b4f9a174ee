from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from library_api.api import auth, authors, records, routes, users
from library_api.api.deps import enforce_rate_limit
from library_api.core.config import configure_logging
from library_api.core.database import Base, engine
from library_api.core.errors import register_exception_handlers
from library_api.core.ttl_store import TTLStore
from library_api.models.models import utcnow

logger = configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Creating database tables (if not present)...")
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Library Management API", lifespan=lifespan)
app.state.ttl_store = TTLStore()
register_exception_handlers(app)

for module in (auth, users, authors, routes, records):
    app.include_router(module.router, dependencies=[Depends(enforce_rate_limit)])


@app.get("/health")
def health():
    return {"status": "ok", "time": utcnow().isoformat()}
