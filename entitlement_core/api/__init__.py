"""HTTP surface: FastAPI routers, dependencies and error mapping."""
