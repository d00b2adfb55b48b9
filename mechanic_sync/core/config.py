"""
Модуль конфигурации проекта.

Загружает настройки из переменных окружения с помощью Pydantic Settings.
Наличие BACKEND_URL и BACKEND_KEY одновременно переключает портал в онлайн-режим,
иначе используется локальное хранилище с демо-данными.
"""

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Основные настройки приложения.

    Атрибуты:
        backend_url (str | None): Базовый URL бэкенда (REST + auth).
        backend_key (str | None): Публичный API-ключ бэкенда.
        local_store_path (str | None): Файл локального хранилища (None - только в памяти).
        read_timeout_seconds (float): Таймаут чтения из бэкенда.
        write_timeout_seconds (float): Таймаут записи в бэкенд.
        assignments_table (str): Журнал назначений (если есть в развертывании).
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # --- Backend Settings ---
    backend_url: str | None = Field(default=None, description="Backend base URL")
    backend_key: str | None = Field(default=None, description="Backend API key")
    local_store_path: str | None = Field(
        default=None, description="Path of the JSON file backing the offline store"
    )

    requests_table: str = Field(default="requests")
    notes_table: str = Field(default="request_notes")
    profiles_table: str = Field(default="profiles")
    assignments_table: str = Field(default="assignments")

    # Сетевые вызовы всегда ограничены по времени
    read_timeout_seconds: float = Field(default=8.0, gt=0)
    write_timeout_seconds: float = Field(default=15.0, gt=0)

    profile_cache_ttl_seconds: int = Field(default=60, ge=0)

    log_level: str = Field(default="INFO", description="Root log level name")

    @computed_field
    @property
    def online(self) -> bool:
        """Онлайн-режим включается только при наличии и URL, и ключа."""
        return bool(self.backend_url and self.backend_key)


# Экземпляр по умолчанию; компоненты также принимают настройки явно
settings = Settings()
