from keyshop import create_app

app = create_app()
