"""
Phone concierge: Twilio Media Streams <-> Gemini Live, with a per-call order
lifecycle coordinator. `server/app.py` wires it into a FastAPI process.
"""
