# rider_app/infra/__init__.py
"""
Инфраструктурный слой: удалённое хранилище, change feed, Redis.
"""
