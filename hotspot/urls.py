"""
URL routing for hotspot API
"""

from django.urls import path
from . import views

urlpatterns = [
    # Safaricom Daraja STK push callback
    path("mpesa/callback/", views.mpesa_callback, name="mpesa_callback"),
    # Captive portal payment flow
    path("payments/initiate/", views.initiate_payment, name="initiate_payment"),
    path(
        "payments/status/<str:transaction_id>/",
        views.payment_status,
        name="payment_status",
    ),
]
