# rider_app/common/__init__.py
"""
Общие утилиты: константы, исключения, логирование, локализация, таймеры.
"""
