"""
Configuration loader.
Reads settings from the environment (and a local .env file) for the rest of the app.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# MongoDB settings
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "wastewise")

# Vision model settings (any OpenAI-compatible endpoint; Gemini by default)
AI_API_KEY = os.getenv("AI_API_KEY") or os.getenv("GEMINI_API_KEY")
AI_BASE_URL = os.getenv("AI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
AI_MODEL = os.getenv("AI_MODEL", "gemini-1.5-flash")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))

# Reward policy
REPORT_POINTS = 10
COLLECT_POINTS = 20
CONFIDENCE_THRESHOLD = 0.7

# Rough CO2 saved per kilogram of waste collected
CO2_PER_KG = 0.5
