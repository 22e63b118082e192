from outdial.serializers.twilio import TwilioSerializer

__all__ = ["TwilioSerializer"]
