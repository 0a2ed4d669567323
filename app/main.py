from fastapi import FastAPI
from app.db.database import Base, engine, check_db_connection
from app.api.v1.routes.chat import router as chat_router
from app.api.v1.routes.expenses import router as expenses_router
from app.api.v1.routes.settlements import router as settlements_router

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Trip Chat Service - Chat & Expenses",
    description="Trip group chat history, shared expenses, debt netting and payments",
    version="1.0.0"
)

app.include_router(chat_router)
app.include_router(expenses_router)
app.include_router(settlements_router)

@app.get("/")
def read_root():
    return {"message": "Trip Chat Service API", "version": "1.0.0"}

@app.get("/health")
def health_check():
    if not check_db_connection():
        return {"status": "unhealthy", "database": "unreachable"}
    return {"status": "healthy"}
