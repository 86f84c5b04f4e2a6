from mocha_web.cli import main

if __name__ == "__main__":
    main()
