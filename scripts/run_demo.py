"""
Quick demo script: run the ConvSim API locally.

Usage:
    python scripts/run_demo.py

Set LLM_API_KEY (or MISTRAL_API_KEY / GROQ_API_KEY) in the environment or
a .env file for the default Mistral-backed vignettes.
"""

import uvicorn


def main():
    print("=" * 60)
    print("  ConvSim — Difficult-Conversation Simulation Engine")
    print("=" * 60)
    print()
    print("Starting server at http://localhost:8000")
    print("List scenarios:  GET  /api/vignettes")
    print("Play a turn:     POST /api/conversations/turn")
    print()
    print("API docs: http://localhost:8000/docs")
    print("Press Ctrl+C to stop.")
    print()

    uvicorn.run(
        "convsim.api.app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
