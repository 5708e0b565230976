import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

try:
    from reconciler import app_context
    from reconciler.app.routes.billing import router as billing_router
    from reconciler.config import load_database_config
except ModuleNotFoundError as exc:
    if exc.name != "reconciler":
        raise
    import app_context  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from config import load_database_config  # type: ignore[no-redef]

_DB = load_database_config()
DB_CFG = dict(
    host=_DB.host,
    port=_DB.port,
    dbname=_DB.name,
    user=_DB.user,
    password=_DB.password,
    connect_timeout=_DB.connect_timeout,
)


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Billing Reconciler API")
app.include_router(billing_router)


@app.get("/api/healthz")
def healthz():
    return {"ok": True}
