import os

from . import create_app


def main():
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
