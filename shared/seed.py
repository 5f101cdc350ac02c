"""Demo catalog shared by the order and stock services for local runs."""

from decimal import Decimal

DEMO_PRODUCTS = [
    {"product_id": "margherita-pizza", "price": Decimal("12.99"), "stock": 50},
    {"product_id": "pepperoni-pizza", "price": Decimal("14.99"), "stock": 50},
    {"product_id": "caesar-salad", "price": Decimal("8.99"), "stock": 30},
    {"product_id": "chicken-burger", "price": Decimal("10.99"), "stock": 40},
    {"product_id": "veggie-wrap", "price": Decimal("9.49"), "stock": 25},
    {"product_id": "garlic-bread", "price": Decimal("4.99"), "stock": 100},
    {"product_id": "coke", "price": Decimal("2.50"), "stock": 200},
    {"product_id": "water", "price": Decimal("1.99"), "stock": 200},
]
