# Run from project root: uvicorn cardsage.main:app --reload

import logging

from fastapi import FastAPI

from cardsage.api.routes import router

logging.basicConfig(level=logging.INFO)


app = FastAPI(title="CardSage Advisor Backend")
app.include_router(router)
