from quota_gate.core.app_factory import create_app

app = create_app()


# Entry point for uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("quota_gate.main:app", host="0.0.0.0", port=8000)
