from django.urls import path
from .views import ConvertReportAPIView, ItemScriptAPIView

urlpatterns = [
    path("convert/", ConvertReportAPIView.as_view(), name="api-convert"),
    path("convert/<str:item>/script/", ItemScriptAPIView.as_view(), name="api-item-script"),
]
