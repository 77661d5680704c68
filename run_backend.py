import os

if __name__ == "__main__":
    import uvicorn
    # The in-memory view store is per process; use more workers only with PGVIEWS_DATABASE_URL set.
    uvicorn.run(
        "pgviews.api.main:app",
        host=os.getenv("PGVIEWS_HOST", "0.0.0.0"),
        port=int(os.getenv("PGVIEWS_PORT", "5000")),
        reload=False,
        workers=int(os.getenv("PGVIEWS_WORKERS", "1")),
    )
