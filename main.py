"""
Entry point for the RenderLab image generation service.

Creates the FastAPI application and starts Uvicorn when run directly.
Logging is configured by the application factory (structured JSON on
stdout).
"""

import uvicorn

import configuration
import renderlab.server_factory

application_configuration = configuration.ApplicationConfiguration()

fastapi_application = renderlab.server_factory.create_application(application_configuration)

if __name__ == "__main__":
    uvicorn.run(
        "main:fastapi_application",
        host=application_configuration.application_host,
        port=application_configuration.application_port,
        log_config=None,
    )
