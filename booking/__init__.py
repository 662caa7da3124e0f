"""
Booking sub-flow — department → staff → slot → optional questions → booking.

The flow keeps its step in ConversationContext.booking_state and talks to
the booking data through BaseBookingStore.
"""
