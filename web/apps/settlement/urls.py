from django.urls import path
from .views import CompletePaymentView, OrdersCollectionView, OrdersPingView, RetrieveOrderView

app_name = "settlement"

urlpatterns = [
    path("pi/payments/complete/", CompletePaymentView.as_view(), name="payments-complete"),
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
]
