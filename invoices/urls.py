from django.urls import path

from invoices import views

app_name = 'invoices'

urlpatterns = [
    path('invoices', views.InvoiceCreateView.as_view(), name='create'),
    path('invoices/<str:invoice_id>', views.InvoiceDetailView.as_view(), name='detail'),
    path('invoices/<str:invoice_id>/status', views.InvoiceStatusView.as_view(), name='status'),
    path('invoices/<str:invoice_id>/verify', views.InvoiceVerifyView.as_view(), name='verify'),
    path('invoices/<str:invoice_id>/extend', views.InvoiceExtendView.as_view(), name='extend'),
    path('invoices/<str:invoice_id>/decline', views.InvoiceDeclineView.as_view(), name='decline'),
    path('invoices/<str:invoice_id>/stream', views.invoice_stream, name='stream'),
    path('webhooks/helius', views.HeliusWebhookView.as_view(), name='helius-webhook'),
    path('debug/pending', views.DebugPendingView.as_view(), name='debug-pending'),
    path('debug/payment-request', views.DebugPaymentRequestView.as_view(), name='debug-payment-request'),
]
