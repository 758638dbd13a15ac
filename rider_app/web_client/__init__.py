# rider_app/web_client/__init__.py
"""
Веб-клиент пассажира на NiceGUI.
"""
