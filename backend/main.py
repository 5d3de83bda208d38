"""
SafePath Safety Backend — FastAPI + XGBoost
Modular entry point. All logic is split across:
  config.py, models.py, geo.py, cache.py, scoring.py, ml_model.py,
  report_store.py, broadcaster.py, safety_service.py, route_scoring.py, routes.py
"""

import logging

logging.basicConfig(level=logging.INFO)

from routes import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
