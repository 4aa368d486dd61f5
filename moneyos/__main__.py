import os

import uvicorn


def run() -> None:
    uvicorn.run(
        "moneyos.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )


if __name__ == "__main__":
    run()
