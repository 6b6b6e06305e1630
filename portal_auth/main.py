from fastapi import FastAPI, HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from portal_auth.config import Settings, load_settings


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Portal Auth API", version="0.1.0")
    app.state.settings = settings
    app.state.engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)

    @app.get("/health")
    def health():
        try:
            with app.state.engine.connect() as connection:
                connection.execute(text("select 1"))
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=503, detail="database_unavailable") from exc
        return {"status": "ok"}

    return app
