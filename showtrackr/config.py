import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./showtrackr.db")

TMDB_API_KEY = os.getenv("TMDB_API_KEY")
TMDB_BASE_URL = os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_URL = "https://image.tmdb.org/t/p"
TMDB_TIMEOUT_SECONDS = float(os.getenv("TMDB_TIMEOUT_SECONDS", "20"))
TMDB_CACHE_SECONDS = float(os.getenv("TMDB_CACHE_SECONDS", "3600"))
TMDB_CACHE_MAX_ENTRIES = int(os.getenv("TMDB_CACHE_MAX_ENTRIES", "512"))

ENRICH_MAX_WORKERS = int(os.getenv("ENRICH_MAX_WORKERS", "8"))

GENRE_REFRESH_HOURS = float(os.getenv("GENRE_REFRESH_HOURS", "24"))
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
