import uvicorn

if __name__ == "__main__":
    # Configuration comes from EPISODE_ENGINE_* environment variables

    print("Starting Episode Pipeline API Server...")
    print("Docs available at: http://localhost:8000/docs")

    uvicorn.run(
        "episode_engine.api.server:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
