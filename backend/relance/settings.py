from pydantic_settings import BaseSettings
from typing import Dict, List
import os

DEFAULT_TEMPLATES = {
    'expert': "Bonjour, nous relançons concernant le dossier {dossier_id}. Merci de nous faire parvenir le rapport d'expertise au plus vite.",
    'client': "Bonjour {client_nom}, nous avons relancé l'expert concernant votre dossier {dossier_id} aujourd'hui. Nous vous tiendrons informé dès réception du rapport. Cordialement.",
    'assurance': "Bonjour, le dossier {dossier_id} est en attente de votre retour depuis {jours_attente} jours. Merci de nous tenir informés.",
}

class Settings(BaseSettings):
    DATA_DIR: str = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "data"))
    ALLOWED_ORIGINS: List[str] = ["*"]  # tighten in prod
    LOG_LEVEL: str = "INFO"

    # bearer token -> user id
    API_TOKENS: Dict[str, str] = {}
    CRON_SECRET: str | None = None

    EMAIL_SENDER: str = "noreply@carrosserie.local"
    RELANCE_FREQUENCY_DAYS: int = 2
    RELANCE_MAX_COUNT: int = 5
    RELANCE_TEMPLATES: Dict[str, str] = DEFAULT_TEMPLATES

settings = Settings()
