# rider_app/web_client/pages/__init__.py
"""
Страницы веб-клиента.
"""
