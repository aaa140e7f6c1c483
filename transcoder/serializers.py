from rest_framework import serializers
from .models import Job


class JobSerializer(serializers.ModelSerializer):
    class Meta:
        model = Job
        fields = [
            "id",
            "source_key",
            "status",
            "progress",
            "error",
            "package_key",
            "created_at",
            "updated_at",
        ]


class UploadCreateSerializer(serializers.Serializer):
    video = serializers.FileField()


class PresignRequestSerializer(serializers.Serializer):
    filename = serializers.CharField()
    content_type = serializers.CharField(required=False, allow_blank=True)


class PresignResponseSerializer(serializers.Serializer):
    key = serializers.CharField()
    url = serializers.URLField()
    headers = serializers.DictField(child=serializers.CharField(), required=False)


class JobFromKeyRequestSerializer(serializers.Serializer):
    key = serializers.CharField()

    def validate_key(self, value):
        value = value.strip().lstrip("/")
        if not value or ".." in value.split("/"):
            raise serializers.ValidationError("Invalid object key.")
        return value


class PackageSerializer(serializers.Serializer):
    name = serializers.CharField()
    url = serializers.URLField()
