from rest_framework import serializers


class ConvertRequestSerializer(serializers.Serializer):
    file = serializers.FileField()
    tolerance = serializers.FloatField(min_value=0.0, default=0.0)
