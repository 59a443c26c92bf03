from rest_framework import serializers
from .models import User


class UserSerializer(serializers.ModelSerializer):
    """Staff profile as shown to clients and terminals."""

    class Meta:
        model = User
        fields = [
            'id',
            'email',
            'display_name',
            'role',
            'created_at',
            'last_login',
        ]
        read_only_fields = fields


class UserLoginSerializer(serializers.Serializer):
    """Serializer for user login."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )
