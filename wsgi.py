import os

from app import create_app

app = create_app()


def main():
    """Run the development server (``gradebook`` console script)"""
    port = int(os.environ.get('PORT', 5001))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False))


if __name__ == '__main__':
    main()
