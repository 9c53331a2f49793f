from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    vasttrafik_base_url: str = "https://ext-api.vasttrafik.se/pr/v4/"
    vasttrafik_token_url: str = "https://ext-api.vasttrafik.se/token"
    vasttrafik_client_id: str = ""
    vasttrafik_client_secret: str = ""
    http_timeout_seconds: float = 30.0

    lines_path: str = "data/lines.json"
    transport_mode: str = "tram"
    max_line_distance_m: float = 50.0
    coordinate_precision: int = 4
    nearby_memo_size: int = 100

    cache_ttl_seconds: float = 10.0
    cache_max_size: int = 1000
    dedupe_window_seconds: float = 5.0

    live_refresh_seconds: float = 3.0
    live_cleanup_seconds: float = 30.0
    live_max_age_seconds: float = 120.0
    max_arrival_entities: int = 50
    max_journey_entities: int = 100

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
