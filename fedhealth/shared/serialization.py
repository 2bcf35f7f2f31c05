"""
Serialization utilities for federated learning data models.
Handles conversion between Python objects and network-transmittable formats.
"""

import io
import json
from datetime import datetime
from typing import Any, Dict
import logging

import torch

from .errors import SerializationError
from .models import CoordinatorResponse, FederatedMessage, ModelUpdate, ModelWeights

logger = logging.getLogger(__name__)


class ModelWeightSerializer:
    """Handles serialization of ordered PyTorch weight lists."""

    @staticmethod
    def serialize_weights(weights: ModelWeights) -> bytes:
        """
        Serialize model weights to bytes.

        Args:
            weights: Ordered list of tensors

        Returns:
            bytes: Serialized weights
        """
        try:
            buffer = io.BytesIO()
            torch.save([w.detach().cpu() for w in weights], buffer)
            serialized_data = buffer.getvalue()

            logger.debug(f"Serialized {len(weights)} tensors, {len(serialized_data)} bytes")
            return serialized_data

        except Exception as e:
            logger.error(f"Failed to serialize model weights: {str(e)}")
            raise SerializationError(f"Weight serialization failed: {str(e)}")

    @staticmethod
    def deserialize_weights(data: bytes) -> ModelWeights:
        """
        Deserialize bytes back to an ordered list of tensors.

        Args:
            data: Serialized weight data

        Returns:
            ModelWeights: Ordered list of tensors
        """
        try:
            weights = torch.load(io.BytesIO(data), map_location='cpu', weights_only=True)
        except Exception as e:
            logger.error(f"Failed to deserialize model weights: {str(e)}")
            raise SerializationError(f"Weight deserialization failed: {str(e)}")

        if not isinstance(weights, list):
            raise SerializationError("Deserialized weights are not a list")
        for index, tensor in enumerate(weights):
            if not isinstance(tensor, torch.Tensor):
                raise SerializationError(f"Weight {index} is not a tensor")

        logger.debug(f"Deserialized {len(weights)} tensors")
        return weights


class ModelUpdateSerializer:
    """Handles serialization of ModelUpdate payloads before encryption."""

    def serialize_update(self, update: ModelUpdate) -> bytes:
        """
        Serialize a ModelUpdate to bytes.

        Args:
            update: ModelUpdate to serialize

        Returns:
            bytes: Serialized update
        """
        try:
            buffer = io.BytesIO()
            torch.save({
                'weights': [w.detach().cpu() for w in update.weights],
                'loss': float(update.loss),
                'samples': int(update.samples),
                'timestamp': update.timestamp.isoformat()
            }, buffer)
            return buffer.getvalue()

        except Exception as e:
            logger.error(f"Failed to serialize model update: {str(e)}")
            raise SerializationError(f"Model update serialization failed: {str(e)}")

    def deserialize_update(self, data: bytes) -> ModelUpdate:
        """
        Deserialize bytes back to a ModelUpdate.

        Args:
            data: Serialized update

        Returns:
            ModelUpdate: Reconstructed update
        """
        try:
            payload = torch.load(io.BytesIO(data), map_location='cpu', weights_only=True)
            weights = payload['weights']
            if not isinstance(weights, list) or not all(isinstance(w, torch.Tensor) for w in weights):
                raise SerializationError("Update payload does not carry a tensor list")

            return ModelUpdate(
                weights=weights,
                loss=float(payload['loss']),
                samples=int(payload['samples']),
                timestamp=datetime.fromisoformat(payload['timestamp'])
            )

        except SerializationError:
            raise
        except Exception as e:
            logger.error(f"Failed to deserialize model update: {str(e)}")
            raise SerializationError(f"Model update deserialization failed: {str(e)}")


class FederatedMessageSerializer:
    """JSON wire encoding of messages exchanged with the coordinator."""

    @staticmethod
    def message_to_dict(message: FederatedMessage) -> Dict[str, Any]:
        return {
            'session_id': message.session_id,
            'round': message.round,
            'update': message.update.hex(),
            'signature': message.signature.hex(),
            'timestamp': message.timestamp,
            'participant_id': message.participant_id
        }

    @staticmethod
    def message_from_dict(data: Dict[str, Any]) -> FederatedMessage:
        return FederatedMessage(
            session_id=str(data['session_id']),
            round=int(data['round']),
            update=bytes.fromhex(data['update']),
            signature=bytes.fromhex(data['signature']),
            timestamp=float(data['timestamp']),
            participant_id=str(data.get('participant_id', ''))
        )

    @staticmethod
    def response_to_dict(response: CoordinatorResponse) -> Dict[str, Any]:
        return {
            'session_id': response.session_id,
            'round': response.round,
            'aggregated_update': response.aggregated_update.hex(),
            'signature': response.signature.hex()
        }

    @staticmethod
    def response_from_dict(data: Dict[str, Any]) -> CoordinatorResponse:
        return CoordinatorResponse(
            session_id=str(data['session_id']),
            round=int(data['round']),
            aggregated_update=bytes.fromhex(data['aggregated_update']),
            signature=bytes.fromhex(data['signature'])
        )

    @classmethod
    def encode_message(cls, message: FederatedMessage) -> bytes:
        """Encode a message for the wire."""
        try:
            return json.dumps(cls.message_to_dict(message)).encode('utf-8')
        except Exception as e:
            raise SerializationError(f"Message encoding failed: {str(e)}")

    @classmethod
    def decode_message(cls, data: bytes) -> FederatedMessage:
        """Decode a message from the wire."""
        try:
            return cls.message_from_dict(json.loads(data.decode('utf-8')))
        except Exception as e:
            raise SerializationError(f"Message decoding failed: {str(e)}")

    @classmethod
    def encode_response(cls, response: CoordinatorResponse) -> bytes:
        """Encode a coordinator response for the wire."""
        try:
            return json.dumps(cls.response_to_dict(response)).encode('utf-8')
        except Exception as e:
            raise SerializationError(f"Response encoding failed: {str(e)}")

    @classmethod
    def decode_response(cls, data: bytes) -> CoordinatorResponse:
        """Decode a coordinator response from the wire."""
        try:
            return cls.response_from_dict(json.loads(data.decode('utf-8')))
        except Exception as e:
            raise SerializationError(f"Response decoding failed: {str(e)}")
