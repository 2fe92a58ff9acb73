"""
IVR Scripts

TwiML documents spoken to restaurants, built with the Twilio SDK's
``VoiceResponse``. Everything here is pure string building; the call
state machine decides which script a call gets.
"""

from typing import Optional

from twilio.twiml.voice_response import Gather, VoiceResponse

from biteclub.models import Order

GATHER_TIMEOUT_SECONDS = 30


class IVRScripts:
    """
    Script factory bound to the brand name and voice.

    Args:
        brand_name: Name introduced at the start of every call
        voice: Twilio ``<Say>`` voice
        support_number: Number dialled when the restaurant presses 0
    """

    def __init__(self, brand_name: str, voice: str = "alice", support_number: Optional[str] = None):
        self.brand_name = brand_name
        self.voice = voice
        self.support_number = support_number

    # =========================================================================
    # MENUS
    # =========================================================================

    def order_menu(self, order: Order, repeat: bool = False) -> str:
        """Order summary followed by the digit menu, re-prompted on repeat."""
        response = VoiceResponse()
        gather = Gather(
            num_digits=1,
            action=f"/api/calls/handle-response/{order.id}",
            method="POST",
            timeout=GATHER_TIMEOUT_SECONDS,
        )

        if repeat:
            intro = (
                f"Order details: Order number {order.short_id} for {order.account.display_name}. "
                f"Total: ${order.final_amount:.2f}."
            )
            repeat_option = "Press 3 to repeat again."
        else:
            intro = (
                f"Hello, this is {self.brand_name} with a new order. "
                f"Order number {order.short_id} for {order.account.display_name}. "
                f"Order total is ${order.final_amount:.2f}."
            )
            repeat_option = "Press 3 to repeat the order details."

        gather.say(
            f"{intro} Items: {self._items_list(order)}. "
            f"Press 1 to accept this order. "
            f"Press 2 to reject this order. "
            f"{repeat_option} "
            f"Press 0 for support.",
            voice=self.voice,
        )
        response.append(gather)

        # Reached only when the gather times out without a digit
        response.redirect(f"/api/calls/no-response/{order.id}", method="POST")
        return str(response)

    @staticmethod
    def _items_list(order: Order) -> str:
        return ", ".join(
            f"{item.quantity} {item.menu_item.name}" for item in order.items
        )

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def goodbye(self, message: str) -> str:
        response = VoiceResponse()
        response.say(message, voice=self.voice)
        response.hangup()
        return str(response)

    def accepted(self) -> str:
        return self.goodbye("Order accepted. Customer will arrive in 15 to 20 minutes. Thank you! Goodbye.")

    def rejected(self) -> str:
        return self.goodbye("Order rejected. The customer will be notified. Goodbye.")

    def support(self) -> str:
        response = VoiceResponse()
        response.say("Connecting you to support. Please hold.", voice=self.voice)
        if self.support_number:
            response.dial(self.support_number)
        else:
            response.say(
                f"Support is not available right now. Please check your {self.brand_name} dashboard. Goodbye.",
                voice=self.voice,
            )
            response.hangup()
        return str(response)

    def invalid_selection(self) -> str:
        return self.goodbye(
            f"Invalid selection. Order remains pending. "
            f"Please check your {self.brand_name} dashboard. Goodbye."
        )

    def too_many_repeats(self) -> str:
        return self.goodbye(
            f"Maximum repeats reached. Order remains pending. "
            f"Please check your {self.brand_name} dashboard. Goodbye."
        )

    def insufficient_balance(self) -> str:
        return self.goodbye(
            "This order cannot be accepted because the customer does not have enough credits. "
            "Order remains pending. Goodbye."
        )

    def already_processed(self) -> str:
        return self.goodbye(
            f"This order has already been processed. "
            f"Please check your {self.brand_name} dashboard. Goodbye."
        )

    def no_response(self) -> str:
        return self.goodbye(
            f"No response received. This order will remain pending. "
            f"Please check your {self.brand_name} dashboard for order details. Goodbye."
        )

    def order_not_found(self) -> str:
        return self.goodbye("Order not found. Goodbye.")

    def error(self) -> str:
        return self.goodbye(
            f"Sorry, there was an error processing your response. "
            f"Please check your {self.brand_name} dashboard. Goodbye."
        )
