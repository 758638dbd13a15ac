# rider_app/core/__init__.py
"""
Доменный слой клиента поездок: геоданные и жизненный цикл заказа.
"""
