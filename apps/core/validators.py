"""
Input validation helpers shared by the API views.
"""
from apps.core.exceptions import ValidationError


def validate_input(serializer_class, data, **kwargs):
    """
    Validate request data with a DRF serializer.

    Returns:
        dict: The serializer's validated data

    Raises:
        ValidationError: With the serializer's field errors as details (422)
    """
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise ValidationError('Validation error', details=serializer.errors)
    return serializer.validated_data
