from django.contrib.auth import authenticate
from rest_framework import serializers

from .constants import SERVICE_TYPE_CHOICES
from .models import MobileDevice, Vehicle, WashRequest, WashRequestVehicle


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(write_only=True, trim_whitespace=False, style={"input_type": "password"})

    def validate(self, attrs):
        request = self.context.get("request")
        username = (attrs.get("username") or "").strip()
        password = attrs.get("password") or ""

        user = authenticate(request=request, username=username, password=password)
        if user is None:
            raise serializers.ValidationError("Username or password is incorrect.")
        if not user.is_active:
            raise serializers.ValidationError("This account is disabled.")

        attrs["user"] = user
        attrs["username"] = username
        return attrs


class DeviceRegistrationSerializer(serializers.ModelSerializer):
    class Meta:
        model = MobileDevice
        fields = ("platform", "device_id", "push_token", "app_version", "locale", "timezone")
        # The view moves an existing token to the registering device.
        extra_kwargs = {"push_token": {"validators": []}}

    def validate_push_token(self, value):
        token = (value or "").strip()
        if not token:
            return None
        if len(token) < 32:
            raise serializers.ValidationError("Push token looks invalid.")
        return token

    def validate_device_id(self, value):
        device_id = (value or "").strip()
        if len(device_id) < 6:
            raise serializers.ValidationError("device_id must be at least 6 characters.")
        return device_id


class VehicleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Vehicle
        fields = ("id", "license_plate", "brand", "model", "vehicle_type", "year", "image_url")

    def validate_license_plate(self, value):
        plate = " ".join((value or "").upper().split())
        if not plate:
            raise serializers.ValidationError("Enter a license plate.")
        client_company = self.context.get("client_company")
        if client_company and Vehicle.objects.filter(client_company=client_company, license_plate=plate).exists():
            raise serializers.ValidationError("This vehicle is already registered.")
        return plate


class WashRequestVehicleSerializer(serializers.ModelSerializer):
    vehicle_id = serializers.IntegerField(source="vehicle.id", read_only=True)
    license_plate = serializers.CharField(source="vehicle.license_plate", read_only=True)
    brand = serializers.CharField(source="vehicle.brand", read_only=True)
    model = serializers.CharField(source="vehicle.model", read_only=True)

    class Meta:
        model = WashRequestVehicle
        fields = ("vehicle_id", "license_plate", "brand", "model", "service_type")


class WashRequestSerializer(serializers.ModelSerializer):
    client_company_name = serializers.CharField(source="client_company.name", read_only=True)
    provider_name = serializers.SerializerMethodField()
    vehicles = WashRequestVehicleSerializer(many=True, read_only=True)

    class Meta:
        model = WashRequest
        fields = (
            "id",
            "status",
            "address",
            "date_time",
            "notes",
            "invoice_url",
            "client_company_name",
            "provider_id",
            "provider_name",
            "vehicles",
            "version",
            "accepted_at",
            "started_at",
            "completed_at",
            "cancelled_at",
            "cancelled_by",
            "created_at",
        )

    def get_provider_name(self, obj):
        if obj.provider_id:
            return obj.provider.name
        return ""


class VisibleRequestSerializer(serializers.Serializer):
    """Provider pending-list row: the request plus its ``recycled`` flag."""

    def to_representation(self, instance):
        payload = WashRequestSerializer(instance.wash_request, context=self.context).data
        payload["recycled"] = bool(instance.recycled)
        return payload


class VehicleAssignmentSerializer(serializers.Serializer):
    vehicle_id = serializers.IntegerField(min_value=1)
    service_type = serializers.ChoiceField(choices=SERVICE_TYPE_CHOICES)


class WashRequestCreateSerializer(serializers.Serializer):
    address = serializers.CharField(max_length=255)
    date_time = serializers.DateTimeField()
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    vehicles = VehicleAssignmentSerializer(many=True, allow_empty=False)


class WashRequestUpdateSerializer(serializers.Serializer):
    address = serializers.CharField(max_length=255, required=False)
    date_time = serializers.DateTimeField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class InvoiceSerializer(serializers.Serializer):
    invoice_url = serializers.CharField(max_length=500)


class RatingSerializer(serializers.Serializer):
    score = serializers.IntegerField(min_value=1, max_value=5)
    comment = serializers.CharField(required=False, allow_blank=True, default="", max_length=1000)
